"""Inbound reconciliation: commerce level changes -> one accounting adjustment job."""

import asyncio
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from ..api_clients import CommerceAPIError, CommerceNotConfiguredError, ShopifyClient
from ..config.settings import AppSettings
from ..inventory import (
    IdentityMap,
    PendingAdjustment,
    PendingAdjustmentTracker,
    SkuOverrides,
    SnapshotStore,
    day_window,
    parse_timestamp,
    resolve_sku_to_item
)
from ..queue import Job, JobQueue, JobType
from ..storage import write_json
from ..utils.logging import get_logger, log_async_execution_time

SYNC_SOURCE = "commerce-bulk-sync"
VARIANT_LOOKUP_SOURCE = "commerce-sync-lookup"
ITEM_LOOKUP_SOURCE = "commerce-sync-inventory-item"
LAST_PLAN_FILE = "inbound-last-plan.json"
LAST_RESULT_FILE = "inbound-last-result.json"
REPORT_CAP = 200


def _number(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def is_commerce_adjustment(job: Job) -> bool:
    return job.type == JobType.INVENTORY_ADJUST and job.source.startswith("commerce-")


def normalize_inventory_levels(
    levels: Iterable[Dict[str, Any]],
    start: datetime,
    end: datetime
) -> List[Dict[str, Any]]:
    """Keep the most recently updated level per inventory item inside ``[start, end)``.

    Levels without an item id or a parseable ``updated_at`` are dropped.
    """
    latest: Dict[str, Dict[str, Any]] = {}
    stamps: Dict[str, datetime] = {}
    for level in levels:
        if not isinstance(level, dict):
            continue
        item_id = level.get("inventory_item_id")
        if item_id is None or str(item_id).strip() == "":
            continue
        updated = parse_timestamp(level.get("updated_at"))
        if updated is None or not (start <= updated < end):
            continue
        key = str(item_id).strip()
        if key not in stamps or updated > stamps[key]:
            latest[key] = level
            stamps[key] = updated
    return list(latest.values())


def _aggregate_key(adjustment: Dict[str, Any]) -> Optional[str]:
    if adjustment.get("list_id"):
        return f"id:{adjustment['list_id']}"
    name = str(adjustment.get("full_name") or adjustment.get("sku") or "").strip().lower()
    return f"name:{name}" if name else None


def aggregate_adjustments(adjustments: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Sum deltas per accounting identity; lines that net to zero are dropped.

    Returns:
        Adjustment lines ``{list_id|full_name, quantity_difference, skus}`` in
        first-seen order
    """
    lines: Dict[str, Dict[str, Any]] = {}
    for adjustment in adjustments:
        key = _aggregate_key(adjustment)
        if key is None:
            continue
        line = lines.get(key)
        if line is None:
            line = {"quantity_difference": 0, "skus": []}
            if adjustment.get("list_id"):
                line["list_id"] = adjustment["list_id"]
            else:
                line["full_name"] = adjustment.get("full_name") or adjustment.get("sku")
            lines[key] = line
        line["quantity_difference"] += adjustment["delta"]
        if adjustment.get("sku") and adjustment["sku"] not in line["skus"]:
            line["skus"].append(adjustment["sku"])
    return [line for line in lines.values() if line["quantity_difference"] != 0]


class InboundReconciler:
    """Turns commerce-side level changes into one consolidated adjustment job.

    SKUs with an adjustment already in flight are skipped so a change we
    caused ourselves is never recomputed into a second, conflicting delta.
    """

    def __init__(
        self,
        settings: AppSettings,
        client: ShopifyClient,
        queue: JobQueue,
        snapshots: SnapshotStore,
        overrides: SkuOverrides,
        identity_map: IdentityMap,
        pending: PendingAdjustmentTracker,
        data_dir: Union[str, Path]
    ):
        self.settings = settings
        self.client = client
        self.queue = queue
        self.snapshots = snapshots
        self.overrides = overrides
        self.identity_map = identity_map
        self.pending = pending
        self.data_dir = Path(data_dir)
        self.last_plan_path = self.data_dir / LAST_PLAN_FILE
        self.last_result_path = self.data_dir / LAST_RESULT_FILE
        self.logger = get_logger(self.__class__.__name__)
        self._apply_lock = asyncio.Lock()

    async def resolve_sku_for_inventory_item(self, inventory_item_id: Any) -> Optional[str]:
        """Map a commerce inventory item to its SKU.

        The identity map is consulted first; on a miss the variant endpoint and
        then the inventory item endpoint are queried and any hit is remembered.
        Lookup failures are logged and treated as a miss.
        """
        sku = self.identity_map.resolve_sku(inventory_item_id)
        if sku:
            return sku

        try:
            variant = await self.client.find_variant_by_inventory_item_id(inventory_item_id)
            if variant and variant.get("sku"):
                self.identity_map.remember([{
                    "inventory_item_id": inventory_item_id,
                    "sku": variant["sku"],
                    "variant_id": variant.get("id"),
                }], source=VARIANT_LOOKUP_SOURCE)
                return str(variant["sku"]).strip()

            sku = await self.client.get_inventory_item_sku(inventory_item_id)
            if sku:
                self.identity_map.remember(
                    [{"inventory_item_id": inventory_item_id, "sku": sku}],
                    source=ITEM_LOOKUP_SOURCE
                )
                return sku
        except CommerceAPIError as e:
            self.logger.warning(
                "Inventory item SKU lookup failed",
                inventory_item_id=inventory_item_id,
                error=str(e)
            )
        return None

    @log_async_execution_time
    async def plan(
        self,
        now: Optional[datetime] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        location_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Compute the adjustments needed to bring accounting in line with commerce.

        Args:
            now: Reference time for the default window (today, local)
            start: Window start, overrides the default
            end: Window end (exclusive), overrides the default
            location_id: Commerce location, defaults to the configured one

        Returns:
            Plan record with window, counts, adjustments, skipped and unmatched

        Raises:
            CommerceNotConfiguredError: If store or token is missing
        """
        if not self.settings.commerce.is_configured:
            raise CommerceNotConfiguredError("Commerce store and token must be configured")

        default_start, default_end = day_window(now)
        start = start or default_start
        end = end or default_end
        location_id = location_id or self.settings.commerce.location_id

        fetched = await self.client.list_inventory_levels_since(start, location_id=location_id)
        levels = normalize_inventory_levels(fetched, start, end)

        snapshot = self.snapshots.load()
        items = snapshot.items
        fields = self.settings.sync.sku_field_list
        overrides = self.overrides.load()
        pending_skus = self.pending.pending_skus()

        adjustments: List[Dict[str, Any]] = []
        skipped: List[Dict[str, Any]] = []
        unmatched: List[Dict[str, Any]] = []

        for level in levels:
            inventory_item_id = str(level.get("inventory_item_id")).strip()
            available = _number(level.get("available"))
            if available is None:
                skipped.append({
                    "inventory_item_id": inventory_item_id,
                    "reason": "INVALID_AVAILABLE",
                    "available": level.get("available"),
                })
                continue

            sku = await self.resolve_sku_for_inventory_item(inventory_item_id)
            if not sku:
                unmatched.append({"inventory_item_id": inventory_item_id, "reason": "NO_SKU"})
                continue

            if sku.strip().lower() in pending_skus:
                skipped.append({
                    "sku": sku,
                    "inventory_item_id": inventory_item_id,
                    "reason": "PENDING_ADJUSTMENT",
                })
                continue

            item = resolve_sku_to_item(items, sku, fields, overrides)
            if item is None:
                unmatched.append({
                    "sku": sku,
                    "inventory_item_id": inventory_item_id,
                    "reason": "NO_ACCOUNTING_MATCH",
                })
                continue

            accounting_qty = _number(item.get("QuantityOnHand")) or 0
            delta = available - accounting_qty
            if delta == 0:
                skipped.append({"sku": sku, "inventory_item_id": inventory_item_id, "reason": "NO_DELTA"})
                continue

            adjustments.append({
                "sku": sku,
                "inventory_item_id": inventory_item_id,
                "available": available,
                "accounting_qty": accounting_qty,
                "delta": delta,
                "target": available,
                "list_id": item.get("ListID"),
                "full_name": item.get("FullName") or item.get("Name") or sku,
                "updated_at": level.get("updated_at"),
                "location_id": level.get("location_id") or location_id,
                "source": SYNC_SOURCE,
            })

        lines = aggregate_adjustments(adjustments)
        plan = {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "window": {"start": start.isoformat(), "end_exclusive": end.isoformat()},
            "location_id": location_id,
            "counts": {
                "fetched_levels": len(fetched),
                "considered_levels": len(levels),
                "adjustments": len(adjustments),
                "lines": len(lines),
                "pending_skus": len(pending_skus),
            },
            "adjustments": adjustments,
            "skipped": skipped[:REPORT_CAP],
            "unmatched": unmatched[:REPORT_CAP],
            "snapshot_summary": {
                "items": len(snapshot.items),
                "filtered_items": len(snapshot.filtered_items),
            },
        }
        self.logger.info("Inbound plan built", **plan["counts"])
        return plan

    async def apply(
        self,
        now: Optional[datetime] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        location_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Plan, then queue one adjustment job for every non-zero aggregated line.

        Runs are serialized, and SKUs that became pending while the plan was
        being built are dropped before the job is created. The job's SKUs are
        registered as pending before the job is queued, then the job is moved
        ahead of other work.
        """
        async with self._apply_lock:
            return await self._apply(now=now, start=start, end=end, location_id=location_id)

    async def _apply(
        self,
        now: Optional[datetime],
        start: Optional[datetime],
        end: Optional[datetime],
        location_id: Optional[str]
    ) -> Dict[str, Any]:
        plan = await self.plan(now=now, start=start, end=end, location_id=location_id)
        self._drop_newly_pending(plan)
        write_json(self.last_plan_path, plan)

        adjustments = plan["adjustments"]
        if not adjustments:
            return self._finish({
                "applied": False,
                "reason": "NO_CHANGES",
                "executed_at": datetime.now(timezone.utc).isoformat(),
                "plan": plan,
            })

        lines = aggregate_adjustments(adjustments)
        if not lines:
            return self._finish({
                "applied": False,
                "reason": "NO_LINES",
                "executed_at": datetime.now(timezone.utc).isoformat(),
                "plan": plan,
            })

        skus = list(dict.fromkeys(adjustment["sku"] for adjustment in adjustments))
        job = Job.inventory_adjust(
            [
                {key: value for key, value in line.items() if key != "skus"}
                for line in lines
            ],
            account=self.settings.qbxml.adjust_account,
            source=SYNC_SOURCE,
            skus=skus,
        )
        # Tracked first: the session handler may confirm the job as soon as it is queued
        self.pending.track(job.id, [
            PendingAdjustment(
                sku=adjustment["sku"],
                job_id=job.id,
                source=SYNC_SOURCE,
                delta=adjustment["delta"],
                available=adjustment["available"],
                accounting_qty=adjustment["accounting_qty"],
                target=adjustment["target"],
                inventory_item_id=adjustment["inventory_item_id"],
            )
            for adjustment in adjustments
        ])
        try:
            await self.queue.enqueue(job)
        except Exception as e:
            self.pending.clear_by_job_id(job.id)
            self.logger.error("Failed to queue inbound adjustment", job_id=job.id, error=str(e))
            raise
        await self.queue.prioritize(is_commerce_adjustment)

        self.logger.info("Inbound adjustment queued", job_id=job.id, lines=len(lines), skus=len(skus))
        return self._finish({
            "applied": True,
            "queued_lines": len(lines),
            "queued_skus": len(skus),
            "job_id": job.id,
            "queued_at": datetime.now(timezone.utc).isoformat(),
            "plan": plan,
        })

    def _drop_newly_pending(self, plan: Dict[str, Any]) -> None:
        pending_skus = self.pending.pending_skus()
        kept = []
        for adjustment in plan["adjustments"]:
            if adjustment["sku"].strip().lower() in pending_skus:
                plan["skipped"].append({
                    "sku": adjustment["sku"],
                    "inventory_item_id": adjustment["inventory_item_id"],
                    "reason": "PENDING_ADJUSTMENT",
                })
            else:
                kept.append(adjustment)
        if len(kept) != len(plan["adjustments"]):
            self.logger.info(
                "Dropped adjustments for SKUs that became pending",
                dropped=len(plan["adjustments"]) - len(kept)
            )
            plan["adjustments"] = kept
            plan["counts"]["adjustments"] = len(kept)
            plan["counts"]["lines"] = len(aggregate_adjustments(kept))
            plan["skipped"] = plan["skipped"][:REPORT_CAP]

    def _finish(self, result: Dict[str, Any]) -> Dict[str, Any]:
        write_json(self.last_result_path, result)
        if not result["applied"]:
            self.logger.info("Inbound sync queued nothing", reason=result["reason"])
        return result
