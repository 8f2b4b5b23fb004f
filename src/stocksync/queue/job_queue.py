"""Durable FIFO job queue with a single in-flight slot."""

from pathlib import Path
from typing import Callable, List, Optional, Union

from pydantic import ValidationError

from .models import Job
from ..storage import FileLock, read_json, write_json_atomic
from ..utils.logging import get_logger

QUEUE_FILE = "jobs.json"
CURRENT_FILE = "current-job.json"
LOCK_FILE = "jobs.lock"

JobPredicate = Callable[[Job], bool]


class JobQueue:
    """FIFO-with-priority list of jobs persisted as JSON.

    Every mutation is a read-modify-write of the whole list under the queue's
    advisory lock, so the session handler, inbound reconciler and API callers
    can share the same files. ``promote_next`` moves the head into the
    current-job slot within a single lock hold.

    Delivery is at-most-once: a job promoted to current and then lost to a
    crash stays in ``current-job.json`` until an operator calls
    :meth:`requeue_current` or :meth:`clear_current`.
    """

    def __init__(self, data_dir: Union[str, Path], lock: Optional[FileLock] = None):
        self.data_dir = Path(data_dir)
        self.queue_path = self.data_dir / QUEUE_FILE
        self.current_path = self.data_dir / CURRENT_FILE
        self.lock = lock or FileLock(self.data_dir / LOCK_FILE)
        self.logger = get_logger(self.__class__.__name__)

    # Internal table access; callers must hold the lock for writes

    def _read(self) -> List[Job]:
        raw = read_json(self.queue_path, default=[], validate=lambda d: isinstance(d, list))
        jobs = []
        for entry in raw:
            try:
                jobs.append(Job.model_validate(entry))
            except ValidationError as e:
                self.logger.warning("Dropping malformed queue entry", entry=entry, error=str(e))
        return jobs

    def _write(self, jobs: List[Job]) -> None:
        write_json_atomic(self.queue_path, [job.to_record() for job in jobs])

    def _write_current(self, job: Optional[Job]) -> None:
        write_json_atomic(self.current_path, job.to_record() if job else None)

    # Queue operations

    async def enqueue(self, job: Job) -> int:
        """Append a job.

        Returns:
            New queue length
        """
        async with self.lock.hold():
            jobs = self._read()
            jobs.append(job)
            self._write(jobs)
        self.logger.info(
            "Job enqueued",
            job_id=job.id,
            job_type=job.type.value,
            source=job.source,
            queue_length=len(jobs)
        )
        return len(jobs)

    async def peek(self) -> Optional[Job]:
        """Return the head job without removing it."""
        jobs = self._read()
        return jobs[0] if jobs else None

    async def pop(self) -> Optional[Job]:
        """Remove and return the head job."""
        async with self.lock.hold():
            jobs = self._read()
            if not jobs:
                return None
            job = jobs.pop(0)
            self._write(jobs)
        return job

    async def prioritize(self, predicate: JobPredicate) -> List[Job]:
        """Move matching jobs to the front, keeping relative order in both groups.

        Returns:
            The resulting queue
        """
        async with self.lock.hold():
            jobs = self._read()
            matched = [job for job in jobs if predicate(job)]
            rest = [job for job in jobs if not predicate(job)]
            if not matched or not rest:
                return jobs
            reordered = matched + rest
            if [job.id for job in reordered] != [job.id for job in jobs]:
                self._write(reordered)
                self.logger.info("Queue reprioritized", moved=len(matched), queue_length=len(reordered))
        return reordered

    async def list_jobs(self) -> List[Job]:
        return self._read()

    async def has_job(self, predicate: JobPredicate) -> bool:
        return any(predicate(job) for job in self._read())

    async def size(self) -> int:
        return len(self._read())

    # Current-job slot

    async def promote_next(self) -> Optional[Job]:
        """Pop the head and record it as the current job in one lock hold."""
        async with self.lock.hold():
            jobs = self._read()
            if not jobs:
                return None
            job = jobs.pop(0)
            self._write_current(job)
            self._write(jobs)
        self.logger.info("Job promoted to current", job_id=job.id, job_type=job.type.value)
        return job

    async def current_job(self) -> Optional[Job]:
        raw = read_json(self.current_path, default=None)
        if not raw:
            return None
        try:
            return Job.model_validate(raw)
        except ValidationError as e:
            self.logger.warning("Current job record is malformed", error=str(e))
            return None

    async def clear_current(self) -> Optional[Job]:
        """Empty the current-job slot, returning what it held."""
        async with self.lock.hold():
            job = await self.current_job()
            if job is not None:
                self._write_current(None)
        return job

    async def requeue_current(self) -> Optional[Job]:
        """Put an unconfirmed current job back at the head of the queue."""
        async with self.lock.hold():
            job = await self.current_job()
            if job is None:
                return None
            jobs = self._read()
            if not any(existing.id == job.id for existing in jobs):
                jobs.insert(0, job)
                self._write(jobs)
            self._write_current(None)
        self.logger.warning("Current job requeued", job_id=job.id, job_type=job.type.value)
        return job
