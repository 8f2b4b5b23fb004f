"""Translate queued jobs into request payloads."""

from typing import Optional

from .builders import build_inventory_adjustment, build_inventory_query
from ..config.settings import QBXMLSettings
from ..queue.models import Job, JobType


def render_job(job: Optional[Job], settings: Optional[QBXMLSettings] = None) -> str:
    """Render the request for a job.

    Pure and deterministic: the same job and settings always produce the same
    string. An empty string means the job has nothing to send.

    Args:
        job: Job to render
        settings: Dialect version, default adjustment account and query bound

    Returns:
        Request XML, or ``""`` when the job yields no request
    """
    if job is None:
        return ""
    settings = settings or QBXMLSettings()
    payload = job.payload or {}

    if job.type == JobType.INVENTORY_QUERY:
        max_returned = payload.get("max_returned")
        if max_returned is None:
            max_returned = settings.max_returned
        try:
            bound = int(max_returned) if max_returned is not None else None
        except (TypeError, ValueError):
            bound = None
        return build_inventory_query(bound, version=settings.version)

    if job.type == JobType.INVENTORY_ADJUST:
        return build_inventory_adjustment(
            payload.get("lines") or [],
            account=payload.get("account") or settings.adjust_account,
            version=settings.version,
        )

    if job.type == JobType.RAW:
        qbxml = payload.get("qbxml")
        return qbxml if isinstance(qbxml, str) else ""

    return ""
