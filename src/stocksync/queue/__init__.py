"""Durable job queue."""

from .models import Job, JobType
from .job_queue import JobQueue

__all__ = ["Job", "JobType", "JobQueue"]
