"""Outbound sync: push accounting on-hand quantities to the commerce platform."""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..api_clients import CommerceAPIError, ShopifyClient
from ..config.settings import AppSettings
from ..inventory import IdentityMap, SkuOverrides, SnapshotStore, pick_sku
from ..storage import FileLock, read_json, write_json
from ..utils.logging import get_logger, log_async_execution_time

SYNC_LOCK_FILE = "outbound-sync.lock"
# A push of a full catalogue can run for minutes
SYNC_LOCK_STALE_SECONDS = 900
LAST_PUSH_FILE = "outbound-last-push.json"
SWEEP_STATUS_FILE = "initial-sweep-status.json"
SWEEP_UNMATCHED_FILE = "initial-sweep-unmatched-accounting.json"
LOOKUP_SOURCE = "commerce-sku-lookup"


class SyncLockedError(Exception):
    """Raised when another outbound run holds the sync lock.

    Callers can retry later; ``code`` distinguishes this from bad input.
    """

    code = "SYNC_LOCKED"

    def __init__(self, message: str = "Outbound sync already running", lock: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.lock = lock


class OutboundAction(str, Enum):
    SET_AVAILABLE = "SET_AVAILABLE"
    NO_MATCH = "NO_MATCH"
    MISSING_SKU = "MISSING_SKU"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    LOOKUP_ERROR = "LOOKUP_ERROR"


@dataclass
class OutboundOp:
    """One planned absolute level update (or the reason there is none)."""

    sku: Optional[str]
    target: Optional[float]
    inventory_item_id: Optional[str]
    action: OutboundAction
    snapshot_index: int
    list_id: Optional[str] = None
    error: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["action"] = self.action.value
        return record


@dataclass
class OutboundPlan:
    fields: List[str]
    ops: List[OutboundOp]
    source_count: int
    snapshot_source: str

    @property
    def set_ops(self) -> List[OutboundOp]:
        return [op for op in self.ops if op.action == OutboundAction.SET_AVAILABLE]

    @property
    def unmatched(self) -> List[OutboundOp]:
        return [op for op in self.ops if op.action != OutboundAction.SET_AVAILABLE]

    def to_record(self) -> Dict[str, Any]:
        return {
            "fields": self.fields,
            "snapshot_source": self.snapshot_source,
            "source_count": self.source_count,
            "ops": [op.to_record() for op in self.ops],
        }


@dataclass
class OutboundResult:
    op: OutboundOp
    ok: bool
    error: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        return {**self.op.to_record(), "ok": self.ok, "error": self.error or self.op.error}


@dataclass
class OutboundApplyResult:
    """Outcome of an apply run, persisted as the last-push audit record."""

    fields: List[str]
    results: List[OutboundResult] = field(default_factory=list)
    snapshot_pruned: Dict[str, Optional[int]] = field(default_factory=dict)
    pushed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.ok)

    @property
    def failure_count(self) -> int:
        return sum(1 for result in self.results if not result.ok)

    def to_record(self) -> Dict[str, Any]:
        return {
            "pushed_at": self.pushed_at,
            "fields": self.fields,
            "success": self.success_count,
            "failed": self.failure_count,
            "results": [result.to_record() for result in self.results],
            "snapshot_pruned": self.snapshot_pruned,
        }


def _quantity(value: Any) -> Optional[float]:
    if value is None or value == "":
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


class OutboundSync:
    """Plans and applies accounting -> commerce level updates.

    Only one apply (or initial sweep) runs at a time; the sync lock is taken
    without waiting and a busy lock surfaces as :class:`SyncLockedError`.
    """

    def __init__(
        self,
        settings: AppSettings,
        client: ShopifyClient,
        snapshots: SnapshotStore,
        overrides: SkuOverrides,
        identity_map: IdentityMap,
        data_dir: Union[str, Path],
        lock: Optional[FileLock] = None
    ):
        self.settings = settings
        self.client = client
        self.snapshots = snapshots
        self.overrides = overrides
        self.identity_map = identity_map
        self.data_dir = Path(data_dir)
        self.lock = lock or FileLock(self.data_dir / SYNC_LOCK_FILE, stale_after=SYNC_LOCK_STALE_SECONDS)
        self.last_push_path = self.data_dir / LAST_PUSH_FILE
        self.sweep_status_path = self.data_dir / SWEEP_STATUS_FILE
        self.sweep_unmatched_path = self.data_dir / SWEEP_UNMATCHED_FILE
        self.logger = get_logger(self.__class__.__name__)

    async def _lookup_variant(self, sku: str) -> Optional[Dict[str, Any]]:
        """Find the variant for a SKU, trusting it only if its inventory item agrees."""
        variant = await self.client.find_variant_by_sku(sku)
        if not variant or not variant.get("inventory_item_id"):
            return None

        try:
            remote_sku = await self.client.get_inventory_item_sku(variant["inventory_item_id"])
        except CommerceAPIError as e:
            self.logger.warning(
                "Variant confirmation failed",
                sku=sku,
                inventory_item_id=variant["inventory_item_id"],
                error=str(e)
            )
            return None

        if (remote_sku or "").strip() != sku:
            self.logger.info(
                "Variant rejected: SKU mismatch",
                sku=sku,
                remote_sku=remote_sku,
                inventory_item_id=variant["inventory_item_id"]
            )
            return None

        self.identity_map.remember([{
            "inventory_item_id": variant["inventory_item_id"],
            "sku": sku,
            "variant_id": variant.get("id"),
        }], source=LOOKUP_SOURCE)
        return variant

    async def build_plan(
        self,
        limit: Optional[int] = None,
        use_all_items: bool = False,
        include_no_sku: bool = False
    ) -> OutboundPlan:
        """Plan one absolute level update per snapshot item.

        Args:
            limit: Stop after this many ops
            use_all_items: Plan over every parsed item instead of today's subset
            include_no_sku: Emit MISSING_SKU ops for items without a SKU

        Returns:
            OutboundPlan; identical for an unchanged snapshot and remote state
        """
        snapshot = self.snapshots.load()
        items = snapshot.items if use_all_items else snapshot.filtered_items
        fields = self.settings.sync.sku_field_list
        overrides = self.overrides.load()
        ops: List[OutboundOp] = []

        for idx, item in enumerate(items):
            if limit and len(ops) >= limit:
                break

            list_id = item.get("ListID")
            sku = self.overrides.sku_for_item(item, overrides) or pick_sku(item, fields)
            if not sku:
                if include_no_sku:
                    ops.append(OutboundOp(
                        sku=None,
                        target=_quantity(item.get("QuantityOnHand")),
                        inventory_item_id=None,
                        action=OutboundAction.MISSING_SKU,
                        snapshot_index=idx,
                        list_id=list_id,
                    ))
                continue

            target = _quantity(item.get("QuantityOnHand"))
            if target is None:
                ops.append(OutboundOp(
                    sku=sku,
                    target=None,
                    inventory_item_id=None,
                    action=OutboundAction.INVALID_QUANTITY,
                    snapshot_index=idx,
                    list_id=list_id,
                    error=f"QuantityOnHand={item.get('QuantityOnHand')!r}",
                ))
                continue

            try:
                variant = await self._lookup_variant(sku)
            except CommerceAPIError as e:
                self.logger.error("SKU lookup error", sku=sku, error=str(e))
                ops.append(OutboundOp(
                    sku=sku,
                    target=target,
                    inventory_item_id=None,
                    action=OutboundAction.LOOKUP_ERROR,
                    snapshot_index=idx,
                    list_id=list_id,
                    error=str(e),
                ))
                continue

            inventory_item_id = str(variant["inventory_item_id"]) if variant else None
            ops.append(OutboundOp(
                sku=sku,
                target=target,
                inventory_item_id=inventory_item_id,
                action=OutboundAction.SET_AVAILABLE if variant else OutboundAction.NO_MATCH,
                snapshot_index=idx,
                list_id=list_id,
            ))

        plan = OutboundPlan(
            fields=fields,
            ops=ops,
            source_count=len(items),
            snapshot_source="items" if use_all_items else "filtered_items",
        )
        self.logger.info(
            "Outbound plan built",
            snapshot_items=len(items),
            ops=len(ops),
            set_available=len(plan.set_ops),
            unmatched=len(plan.unmatched)
        )
        return plan

    async def dry_run(self, limit: Optional[int] = None) -> OutboundPlan:
        """Plan without applying.

        Raises:
            SyncLockedError: If an apply currently holds the sync lock
        """
        if self.lock.locked:
            raise SyncLockedError(lock=self.lock.read_marker())
        return await self.build_plan(limit)

    async def _push(self, ops: List[OutboundOp]) -> List[OutboundResult]:
        results = []
        for op in ops:
            if op.action != OutboundAction.SET_AVAILABLE or not op.inventory_item_id:
                results.append(OutboundResult(op=op, ok=False, error=op.error or op.action.value))
                continue
            try:
                await self.client.set_inventory_level(op.inventory_item_id, op.target)
                results.append(OutboundResult(op=op, ok=True))
            except CommerceAPIError as e:
                self.logger.error(
                    "Set inventory level failed",
                    sku=op.sku,
                    inventory_item_id=op.inventory_item_id,
                    target=op.target,
                    error=str(e)
                )
                results.append(OutboundResult(op=op, ok=False, error=str(e)))
        return results

    async def _acquire_or_raise(self) -> None:
        if not await self.lock.acquire(wait=False):
            raise SyncLockedError(lock=self.lock.read_marker())

    @log_async_execution_time
    async def apply(self, limit: Optional[int] = None) -> OutboundApplyResult:
        """Push planned levels, prune pushed items from the snapshot and record the run.

        Raises:
            SyncLockedError: If another run holds the sync lock
        """
        await self._acquire_or_raise()
        try:
            plan = await self.build_plan(limit)
            results = await self._push(plan.ops)

            pushed_ids = set()
            pushed_indices = set()
            for result in results:
                if not result.ok:
                    continue
                if result.op.list_id is not None:
                    pushed_ids.add(str(result.op.list_id))
                else:
                    pushed_indices.add(result.op.snapshot_index)
            pruned = self.snapshots.prune_filtered(pushed_ids, pushed_indices)

            outcome = OutboundApplyResult(fields=plan.fields, results=results, snapshot_pruned=pruned)
            write_json(self.last_push_path, outcome.to_record())
            self.logger.info(
                "Outbound apply finished",
                ok=outcome.success_count,
                failed=outcome.failure_count,
                pruned=pruned
            )
            return outcome
        finally:
            await self.lock.release()

    # Initial sweep

    def read_sweep_status(self) -> Optional[Dict[str, Any]]:
        return read_json(self.sweep_status_path, default=None)

    def read_sweep_unmatched(self) -> Optional[Dict[str, Any]]:
        return read_json(self.sweep_unmatched_path, default=None)

    @log_async_execution_time
    async def run_initial_sweep(self) -> Dict[str, Any]:
        """Push every parsed item once and report accounting items with no commerce match."""
        started_at = datetime.now(timezone.utc).isoformat()
        write_json(self.sweep_status_path, {"status": "running", "started_at": started_at})

        try:
            await self._acquire_or_raise()
        except SyncLockedError as e:
            write_json(self.sweep_status_path, {
                "status": "failed",
                "started_at": started_at,
                "finished_at": datetime.now(timezone.utc).isoformat(),
                "error": str(e),
                "code": e.code,
            })
            raise

        try:
            plan = await self.build_plan(use_all_items=True, include_no_sku=True)
            snapshot_items = self.snapshots.load().items
            unmatched = []
            for op in plan.unmatched:
                item = snapshot_items[op.snapshot_index] if op.snapshot_index < len(snapshot_items) else {}
                unmatched.append({
                    "sku": op.sku,
                    "list_id": op.list_id,
                    "name": item.get("FullName") or item.get("Name"),
                    "quantity_on_hand": op.target,
                    "action": op.action.value,
                })
            generated_at = datetime.now(timezone.utc).isoformat()
            write_json(self.sweep_unmatched_path, {
                "generated_at": generated_at,
                "count": len(unmatched),
                "items": unmatched,
            })

            results = await self._push(plan.set_ops)
            failures = [result for result in results if not result.ok]
            status = {
                "status": "completed",
                "started_at": started_at,
                "finished_at": datetime.now(timezone.utc).isoformat(),
                "operations_planned": len(plan.set_ops),
                "success": len(results) - len(failures),
                "failed": len(failures),
                "errors": [
                    {
                        "sku": result.op.sku,
                        "inventory_item_id": result.op.inventory_item_id,
                        "target": result.op.target,
                        "error": result.error,
                    }
                    for result in failures
                ],
                "unmatched_accounting": len(unmatched),
                "snapshot_source": plan.snapshot_source,
            }
            write_json(self.sweep_status_path, status)
            return status
        except Exception as e:
            write_json(self.sweep_status_path, {
                "status": "failed",
                "started_at": started_at,
                "finished_at": datetime.now(timezone.utc).isoformat(),
                "error": str(e),
                "code": getattr(e, "code", None),
            })
            raise
        finally:
            await self.lock.release()

    async def run_initial_sweep_if_needed(self) -> Optional[Dict[str, Any]]:
        """Run the sweep once when enabled; a completed or running status means skip."""
        if not self.settings.sync.initial_sweep_enabled:
            return None
        status = self.read_sweep_status()
        if status and status.get("status") in ("completed", "running"):
            self.logger.info("Initial sweep already recorded", status=status.get("status"))
            return status
        return await self.run_initial_sweep()
