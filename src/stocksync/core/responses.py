"""Response recording and per-job-type completion handling."""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from ..config.settings import AppSettings
from ..inventory import InventorySnapshot, PendingAdjustmentTracker, SnapshotStore
from ..qbxml import extract_status_summaries, find_status, parse_inventory_items
from ..queue import Job, JobQueue, JobType
from ..storage import write_text
from ..utils.logging import get_logger

LAST_REQUEST_FILE = "last-request.xml"
LAST_RESPONSE_FILE = "last-response.xml"
HISTORY_DIR = "responses"
REFRESH_SOURCE = "commerce-adjust-refresh"

SnapshotCallback = Callable[[InventorySnapshot], Awaitable[Any]]


def is_inventory_query(job: Job) -> bool:
    return job.type == JobType.INVENTORY_QUERY


class ResponseRecorder:
    """Persists request/response payloads and completes the current job.

    Query responses replace the inventory snapshot and may kick off an
    outbound push in the background. Adjustment responses confirm or fail
    the job's pending entries.
    """

    def __init__(
        self,
        settings: AppSettings,
        queue: JobQueue,
        snapshots: SnapshotStore,
        pending: PendingAdjustmentTracker,
        data_dir: Union[str, Path],
        on_snapshot: Optional[SnapshotCallback] = None
    ):
        self.settings = settings
        self.queue = queue
        self.snapshots = snapshots
        self.pending = pending
        self.data_dir = Path(data_dir)
        self.history_dir = self.data_dir / HISTORY_DIR
        self.on_snapshot = on_snapshot
        self._tasks: Set[asyncio.Task] = set()
        self.logger = get_logger(self.__class__.__name__)

    # Raw payloads

    def record_request(self, xml: str) -> None:
        write_text(self.data_dir / LAST_REQUEST_FILE, xml)

    def record_response(self, xml: str, job: Optional[Job] = None) -> None:
        """Write the latest response and a pruned, timestamped history copy."""
        write_text(self.data_dir / LAST_RESPONSE_FILE, xml)

        keep = self.settings.storage.response_history
        if keep <= 0:
            return
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        kind = job.type.value if job else "unknown"
        write_text(self.history_dir / f"{stamp}-{kind}.xml", xml)
        self._prune_history(keep)

    def _prune_history(self, keep: int) -> None:
        try:
            files = sorted(self.history_dir.glob("*.xml"))
            for stale in files[:-keep]:
                stale.unlink(missing_ok=True)
        except OSError as e:
            self.logger.warning("Failed to prune response history", error=str(e))

    # Completion

    async def complete(self, job: Optional[Job], xml: str, error: Optional[str] = None) -> Dict[str, Any]:
        """Record a response and run the completion handler for ``job``.

        Args:
            job: The current job the response answers, if any
            xml: Response payload
            error: Client-reported failure; the job is completed as failed

        Returns:
            Outcome ``{"job_id", "type", "ok", ...}``
        """
        self.record_response(xml, job)
        summaries = extract_status_summaries(xml)
        for summary in summaries:
            self.logger.info("Response status", job_id=job.id if job else None, **summary)

        if job is None:
            self.logger.warning("Response received with no current job", statuses=len(summaries))
            return {"job_id": None, "type": None, "ok": False, "error": "NO_CURRENT_JOB"}

        if error:
            if job.type == JobType.INVENTORY_ADJUST:
                self.pending.record_failure(job.id, error)
            self.logger.error("Job failed in accounting client", job_id=job.id, job_type=job.type.value, error=error)
            return {"job_id": job.id, "type": job.type.value, "ok": False, "error": error}

        if job.type == JobType.INVENTORY_QUERY:
            return await self._complete_query(job, xml)
        if job.type == JobType.INVENTORY_ADJUST:
            return await self._complete_adjustment(job, xml)
        return {"job_id": job.id, "type": job.type.value, "ok": True}

    async def _complete_query(self, job: Job, xml: str) -> Dict[str, Any]:
        status = find_status(xml, "ItemInventoryQueryRs")
        if status is None:
            self.logger.warning("Inventory query response without a query result", job_id=job.id)
            return {"job_id": job.id, "type": job.type.value, "ok": False, "error": "NO_QUERY_RESULT"}

        snapshot = self.snapshots.save(InventorySnapshot.build(parse_inventory_items(xml)))
        code = status.get("statusCode")
        if (
            self.settings.sync.auto_push
            and self.on_snapshot is not None
            and code in (None, 0)
            and snapshot.filtered_items
        ):
            self._schedule_push(snapshot)

        return {
            "job_id": job.id,
            "type": job.type.value,
            "ok": True,
            "status": status,
            "items": len(snapshot.items),
            "filtered_items": len(snapshot.filtered_items),
        }

    async def _complete_adjustment(self, job: Job, xml: str) -> Dict[str, Any]:
        status = find_status(xml, "InventoryAdjustmentAddRs")
        if status is None or status.get("statusCode") != 0:
            error = (status or {}).get("statusMessage") or "Adjustment response carried no success status"
            self.pending.record_failure(job.id, error)
            self.logger.error("Inventory adjustment not confirmed", job_id=job.id, status=status)
            return {"job_id": job.id, "type": job.type.value, "ok": False, "status": status, "error": error}

        cleared = self.pending.clear_by_job_id(job.id)
        if not cleared and job.skus:
            cleared = self.pending.clear_by_skus(job.skus)

        refresh_id = None
        if not await self.queue.has_job(is_inventory_query):
            refresh = Job.inventory_query(source=REFRESH_SOURCE, triggered_by=job.id)
            await self.queue.enqueue(refresh)
            refresh_id = refresh.id

        self.logger.info("Inventory adjustment confirmed", job_id=job.id, cleared=cleared, refresh_job_id=refresh_id)
        return {
            "job_id": job.id,
            "type": job.type.value,
            "ok": True,
            "status": status,
            "pending_cleared": cleared,
            "refresh_job_id": refresh_id,
        }

    # Background auto-push

    def _schedule_push(self, snapshot: InventorySnapshot) -> None:
        task = asyncio.create_task(self._run_push(snapshot))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_push(self, snapshot: InventorySnapshot) -> None:
        try:
            await self.on_snapshot(snapshot)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error("Automatic outbound push failed", error=str(e))

    @property
    def background_tasks(self) -> Set[asyncio.Task]:
        return set(self._tasks)

    async def cancel_background(self) -> None:
        """Cancel outstanding pushes and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
