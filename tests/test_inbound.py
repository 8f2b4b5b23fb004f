"""Tests for the commerce -> accounting inbound reconciler."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from stocksync.api_clients import CommerceNotConfiguredError
from stocksync.core.inbound import InboundReconciler, aggregate_adjustments, normalize_inventory_levels
from stocksync.inventory import (
    IdentityMap,
    InventorySnapshot,
    PendingAdjustment,
    PendingAdjustmentTracker,
    SkuOverrides,
    SnapshotStore
)
from stocksync.queue import Job, JobQueue, JobType

EST = timezone(timedelta(hours=-5))
NOW = datetime(2024, 3, 5, 14, 30, tzinfo=EST)
IN_WINDOW = "2024-03-05T12:00:00-05:00"


def level(inventory_item_id, available, updated_at=IN_WINDOW):
    return {
        "inventory_item_id": inventory_item_id,
        "location_id": 99,
        "available": available,
        "updated_at": updated_at,
    }


class Harness:
    """Reconciler plus direct handles on its stores."""

    def __init__(self, settings, commerce, data_dir):
        self.commerce = commerce
        self.queue = JobQueue(data_dir)
        self.snapshots = SnapshotStore(data_dir)
        self.overrides = SkuOverrides(data_dir)
        self.identity = IdentityMap(data_dir)
        self.pending = PendingAdjustmentTracker(data_dir)
        self.reconciler = InboundReconciler(
            settings,
            commerce,
            self.queue,
            self.snapshots,
            self.overrides,
            self.identity,
            self.pending,
            data_dir
        )

    def snapshot(self, *items):
        self.snapshots.save(InventorySnapshot.build(list(items), NOW))


@pytest.fixture
def harness(settings, commerce, data_dir):
    return Harness(settings, commerce, data_dir)


class TestHelpers:

    def test_normalize_keeps_latest_in_window(self):
        start = datetime(2024, 3, 5, tzinfo=EST)
        end = start + timedelta(days=1)
        levels = [
            level(1, 5, "2024-03-05T08:00:00-05:00"),
            level(1, 6, "2024-03-05T09:00:00-05:00"),
            level(1, 4, "2024-03-05T07:00:00-05:00"),
            level(2, 1, "2024-03-04T23:00:00-05:00"),
            level(3, 2, "2024-03-06T00:00:00-05:00"),
            level(None, 9),
            {"inventory_item_id": 4, "available": 1},
        ]

        result = normalize_inventory_levels(levels, start, end)

        assert [(lv["inventory_item_id"], lv["available"]) for lv in result] == [(1, 6)]

    def test_aggregate_sums_by_identity(self):
        lines = aggregate_adjustments([
            {"sku": "A", "list_id": "L1", "delta": -3},
            {"sku": "A2", "list_id": "L1", "delta": 1},
            {"sku": "B", "list_id": None, "full_name": "Bolt", "delta": 2},
            {"sku": "B2", "list_id": None, "full_name": "bolt", "delta": 1},
            {"sku": "C", "list_id": "L3", "delta": 4},
            {"sku": "C2", "list_id": "L3", "delta": -4},
        ])

        assert lines == [
            {"list_id": "L1", "quantity_difference": -2, "skus": ["A", "A2"]},
            {"full_name": "Bolt", "quantity_difference": 3, "skus": ["B", "B2"]},
        ]


class TestInboundReconciler:

    @pytest.mark.asyncio
    async def test_end_to_end_single_adjustment(self, harness, data_dir):
        harness.snapshot({"ListID": "80000001-123", "Name": "Widget", "QuantityOnHand": 10})
        harness.identity.remember([{"inventory_item_id": 555, "sku": "Widget"}])
        harness.commerce.levels = [level(555, 7)]

        result = await harness.reconciler.apply(now=NOW)

        assert result["applied"] is True
        assert result["queued_lines"] == 1
        assert result["queued_skus"] == 1
        adjustment = result["plan"]["adjustments"][0]
        assert adjustment["delta"] == -3
        assert adjustment["accounting_qty"] == 10
        assert adjustment["target"] == 7

        jobs = await harness.queue.list_jobs()
        assert len(jobs) == 1
        job = jobs[0]
        assert job.id == result["job_id"]
        assert job.type == JobType.INVENTORY_ADJUST
        assert job.source == "commerce-bulk-sync"
        assert job.skus == ["Widget"]
        assert job.payload["lines"] == [{"list_id": "80000001-123", "quantity_difference": -3}]
        assert job.payload["account"] == "Inventory Adjustment"

        pending = harness.pending.list_entries()
        assert len(pending) == 1
        entry = pending[0]
        assert (entry.sku, entry.delta, entry.accounting_qty, entry.target) == ("Widget", -3, 10, 7)
        assert entry.job_id == job.id

        assert json.loads((data_dir / "inbound-last-result.json").read_text())["job_id"] == job.id
        assert (data_dir / "inbound-last-plan.json").exists()

    @pytest.mark.asyncio
    async def test_pending_sku_is_skipped_until_cleared(self, harness):
        harness.snapshot({"ListID": "L1", "Name": "WIDGET-1", "QuantityOnHand": 10})
        harness.identity.remember([{"inventory_item_id": 555, "sku": "WIDGET-1"}])
        harness.commerce.levels = [level(555, 4)]
        harness.pending.track("outbound-job", [PendingAdjustment(sku="WIDGET-1", delta=-6)])

        result = await harness.reconciler.apply(now=NOW)

        assert result["applied"] is False
        assert result["reason"] == "NO_CHANGES"
        assert result["plan"]["skipped"] == [
            {"sku": "WIDGET-1", "inventory_item_id": "555", "reason": "PENDING_ADJUSTMENT"}
        ]
        assert result["plan"]["counts"]["pending_skus"] == 1
        assert await harness.queue.size() == 0

        harness.pending.clear_by_job_id("outbound-job")
        plan = await harness.reconciler.plan(now=NOW)
        assert [a["sku"] for a in plan["adjustments"]] == ["WIDGET-1"]

    @pytest.mark.asyncio
    async def test_skip_and_unmatched_reasons(self, harness):
        harness.snapshot(
            {"ListID": "L1", "Name": "SAME", "QuantityOnHand": 3},
            {"ListID": "L2", "Name": "BROKEN", "QuantityOnHand": 3},
        )
        harness.identity.remember([
            {"inventory_item_id": 1, "sku": "SAME"},
            {"inventory_item_id": 2, "sku": "BROKEN"},
            {"inventory_item_id": 3, "sku": "NOT-IN-ACCOUNTING"},
        ])
        harness.commerce.levels = [level(1, 3), level(2, None), level(3, 8), level(4, 1)]

        plan = await harness.reconciler.plan(now=NOW)

        assert plan["adjustments"] == []
        assert {(s["inventory_item_id"], s["reason"]) for s in plan["skipped"]} == {
            ("1", "NO_DELTA"),
            ("2", "INVALID_AVAILABLE"),
        }
        assert {(u["inventory_item_id"], u["reason"]) for u in plan["unmatched"]} == {
            ("3", "NO_ACCOUNTING_MATCH"),
            ("4", "NO_SKU"),
        }
        assert plan["counts"]["fetched_levels"] == 4
        assert plan["snapshot_summary"] == {"items": 2, "filtered_items": 0}

    @pytest.mark.asyncio
    async def test_identity_miss_is_resolved_and_remembered(self, harness):
        harness.snapshot({"ListID": "L1", "Name": "GADGET", "QuantityOnHand": 1})
        harness.commerce.add_variant("GADGET", "777")
        harness.commerce.item_skus["888"] = "GADGET-2"
        harness.commerce.levels = [level(777, 2), level(888, 1)]

        plan = await harness.reconciler.plan(now=NOW)

        assert [a["sku"] for a in plan["adjustments"]] == ["GADGET"]
        entries = harness.identity.entries()
        assert entries["777"]["source"] == "commerce-sync-lookup"
        assert entries["888"] == {**entries["888"], "sku": "GADGET-2", "source": "commerce-sync-inventory-item"}

    @pytest.mark.asyncio
    async def test_adjustment_jobs_jump_the_queue(self, harness):
        harness.snapshot({"ListID": "L1", "Name": "W", "QuantityOnHand": 1})
        harness.identity.remember([{"inventory_item_id": 1, "sku": "W"}])
        harness.commerce.levels = [level(1, 2)]
        query = Job.inventory_query(source="api")
        await harness.queue.enqueue(query)

        result = await harness.reconciler.apply(now=NOW)

        assert [job.id for job in await harness.queue.list_jobs()] == [result["job_id"], query.id]

    @pytest.mark.asyncio
    async def test_requires_commerce_configuration(self, make_settings, commerce, data_dir):
        harness = Harness(make_settings(commerce=False), commerce, data_dir)

        with pytest.raises(CommerceNotConfiguredError):
            await harness.reconciler.plan(now=NOW)

    @pytest.mark.asyncio
    async def test_overlapping_runs_queue_one_adjustment(self, harness):
        harness.snapshot({"ListID": "L1", "Name": "WIDGET-1", "QuantityOnHand": 10})
        harness.commerce.add_variant("WIDGET-1", "555")
        harness.commerce.levels = [level(555, 7)]

        first, second = await asyncio.gather(
            harness.reconciler.apply(now=NOW),
            harness.reconciler.apply(now=NOW),
        )

        assert sorted([first["applied"], second["applied"]]) == [False, True]
        jobs = await harness.queue.list_jobs()
        assert [(job.type, job.skus) for job in jobs] == [(JobType.INVENTORY_ADJUST, ["WIDGET-1"])]
        assert len(harness.pending.list_entries()) == 1

    @pytest.mark.asyncio
    async def test_sku_pending_mid_plan_is_dropped(self, harness):
        harness.snapshot({"ListID": "L1", "Name": "WIDGET-1", "QuantityOnHand": 10})
        harness.commerce.add_variant("WIDGET-1", "555")
        harness.commerce.levels = [level(555, 7)]
        lookup = harness.commerce.find_variant_by_inventory_item_id

        async def lookup_while_outbound_queues(inventory_item_id):
            harness.pending.track("outbound-job", [PendingAdjustment(sku="WIDGET-1", delta=2)])
            return await lookup(inventory_item_id)

        harness.commerce.find_variant_by_inventory_item_id = lookup_while_outbound_queues

        result = await harness.reconciler.apply(now=NOW)

        assert result["applied"] is False
        assert result["plan"]["adjustments"] == []
        assert result["plan"]["skipped"][-1]["reason"] == "PENDING_ADJUSTMENT"
        assert await harness.queue.size() == 0

    @pytest.mark.asyncio
    async def test_pending_entries_exist_before_job_is_visible(self, harness):
        harness.snapshot({"ListID": "L1", "Name": "W", "QuantityOnHand": 1})
        harness.identity.remember([{"inventory_item_id": 1, "sku": "W"}])
        harness.commerce.levels = [level(1, 2)]
        enqueue = harness.queue.enqueue
        seen = []

        async def recording_enqueue(job):
            seen.append([entry.job_id for entry in harness.pending.list_entries()])
            return await enqueue(job)

        harness.queue.enqueue = recording_enqueue

        result = await harness.reconciler.apply(now=NOW)

        assert seen == [[result["job_id"]]]

    @pytest.mark.asyncio
    async def test_failed_enqueue_rolls_back_pending(self, harness):
        harness.snapshot({"ListID": "L1", "Name": "W", "QuantityOnHand": 1})
        harness.identity.remember([{"inventory_item_id": 1, "sku": "W"}])
        harness.commerce.levels = [level(1, 2)]
        harness.queue.enqueue = AsyncMock(side_effect=OSError("disk full"))

        with pytest.raises(OSError):
            await harness.reconciler.apply(now=NOW)

        assert harness.pending.list_entries() == []
