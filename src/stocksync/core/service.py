"""Sync service: owns every component and their start/stop lifecycle."""

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional, Set

from .inbound import InboundReconciler
from .outbound import OutboundSync, SyncLockedError
from .responses import ResponseRecorder
from .session import SessionHandler
from ..api_clients import CommerceAPIError, ShopifyClient
from ..config.settings import AppSettings
from ..inventory import (
    IdentityMap,
    InventorySnapshot,
    PendingAdjustmentTracker,
    SkuOverrides,
    SnapshotStore
)
from ..queue import Job, JobQueue
from ..queue.job_queue import LOCK_FILE
from ..scheduler import AutoSyncScheduler
from ..storage import lock_from_settings
from ..utils.logging import get_logger


class SyncService:
    """Composition root for the sync engine.

    Built from one settings value; nothing here is module-global, so tests
    and embedding applications can run several services side by side.
    """

    def __init__(self, settings: AppSettings, client: Optional[ShopifyClient] = None):
        """Wire the components.

        Args:
            settings: Application settings
            client: Commerce client; one is built from settings when omitted
        """
        self.settings = settings
        self.data_dir = Path(settings.storage.data_dir)
        self.logger = get_logger(self.__class__.__name__)

        self.queue = JobQueue(
            self.data_dir,
            lock=lock_from_settings(self.data_dir / LOCK_FILE, settings.storage)
        )
        self.snapshots = SnapshotStore(self.data_dir)
        self.overrides = SkuOverrides(self.data_dir)
        self.identity_map = IdentityMap(self.data_dir)
        self.pending = PendingAdjustmentTracker(self.data_dir)
        self.client = client or ShopifyClient(settings.commerce, settings.rate_limit)

        self.outbound = OutboundSync(
            settings,
            self.client,
            self.snapshots,
            self.overrides,
            self.identity_map,
            self.data_dir
        )
        self.inbound = InboundReconciler(
            settings,
            self.client,
            self.queue,
            self.snapshots,
            self.overrides,
            self.identity_map,
            self.pending,
            self.data_dir
        )
        self.recorder = ResponseRecorder(
            settings,
            self.queue,
            self.snapshots,
            self.pending,
            self.data_dir,
            on_snapshot=self._auto_push
        )
        self.session = SessionHandler(settings, self.queue, self.recorder)
        self.scheduler = AutoSyncScheduler(settings, self.inbound.apply)

        self._tasks: Set[asyncio.Task] = set()
        self.started = False

    async def start(self) -> Dict[str, Any]:
        """Start background work.

        Returns:
            Auto-sync status as reported by the scheduler
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)

        current = await self.queue.current_job()
        if current is not None:
            self.logger.warning(
                "Unconfirmed job left in the current slot; requeue or clear it manually",
                job_id=current.id,
                job_type=current.type.value,
                source=current.source
            )

        auto_sync = self.scheduler.start()

        if self.settings.sync.initial_sweep_enabled:
            if self.settings.commerce.is_configured:
                self._spawn(self._initial_sweep())
            else:
                self.logger.warning("Initial sweep skipped: commerce not configured")

        self.started = True
        self.logger.info("Sync service started", data_dir=str(self.data_dir), auto_sync=auto_sync)
        return auto_sync

    async def stop(self) -> None:
        """Stop timers, cancel background pushes and close the commerce client."""
        self.scheduler.stop()
        await self.recorder.cancel_background()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        await self.client.close()
        self.started = False
        self.logger.info("Sync service stopped")

    async def enqueue_inventory_query(self, max_returned: Optional[int] = None, source: str = "api") -> Job:
        job = Job.inventory_query(max_returned=max_returned, source=source)
        await self.queue.enqueue(job)
        return job

    async def status(self) -> Dict[str, Any]:
        current = await self.queue.current_job()
        snapshot = self.snapshots.load()
        return {
            "queue_length": await self.queue.size(),
            "current_job": current.to_record() if current else None,
            "pending_adjustments": len(self.pending.list_entries()),
            "snapshot": {
                "items": len(snapshot.items),
                "filtered_items": len(snapshot.filtered_items),
                "generated_at": snapshot.generated_at,
            },
            "auto_sync": {
                "running": self.scheduler.running,
                "next_run_time": self.scheduler.next_run_time,
                **self.scheduler.stats,
            },
            "initial_sweep": self.outbound.read_sweep_status(),
        }

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _initial_sweep(self) -> None:
        try:
            await self.outbound.run_initial_sweep_if_needed()
        except (SyncLockedError, CommerceAPIError) as e:
            self.logger.error("Initial sweep failed", error=str(e))

    async def _auto_push(self, snapshot: InventorySnapshot) -> None:
        if not self.settings.commerce.is_configured:
            self.logger.info("Automatic outbound push skipped: commerce not configured")
            return
        try:
            result = await self.outbound.apply()
        except SyncLockedError as e:
            self.logger.info("Automatic outbound push skipped: sync locked", holder=e.lock)
            return
        self.logger.info(
            "Automatic outbound push finished",
            filtered_items=len(snapshot.filtered_items),
            success=result.success_count,
            failed=result.failure_count
        )
