"""Tests for the accounting -> commerce outbound sync."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from stocksync.core.outbound import OutboundAction, OutboundSync, SyncLockedError
from stocksync.inventory import IdentityMap, InventorySnapshot, SkuOverrides, SnapshotStore
from stocksync.storage import FileLock

EST = timezone(timedelta(hours=-5))
NOW = datetime(2024, 3, 5, 14, 30, tzinfo=EST)
TODAY = "2024-03-05T09:00:00-05:00"
LAST_WEEK = "2024-02-27T09:00:00-05:00"


def item(list_id, name, qty, modified=TODAY):
    record = {"ListID": list_id, "TimeModified": modified, "QuantityOnHand": qty}
    if name is not None:
        record["Name"] = name
    return record


@pytest.fixture
def stores(data_dir):
    return SnapshotStore(data_dir), SkuOverrides(data_dir), IdentityMap(data_dir)


@pytest.fixture
def outbound(settings, commerce, stores, data_dir):
    snapshots, overrides, identity = stores
    return OutboundSync(settings, commerce, snapshots, overrides, identity, data_dir)


def save_snapshot(snapshots, items):
    snapshots.save(InventorySnapshot.build(items, NOW))


class TestOutboundPlan:

    @pytest.mark.asyncio
    async def test_plan_actions(self, outbound, commerce, stores):
        snapshots, _, identity = stores
        commerce.add_variant("WIDGET-1", "111")
        save_snapshot(snapshots, [
            item("1", "WIDGET-1", 10),
            item("2", "GADGET", 4),
            item("3", None, 1),
            item("4", "BAD", "x"),
            item("5", "OLD", 3, modified=LAST_WEEK),
        ])

        plan = await outbound.build_plan()

        actions = [(op.sku, op.action, op.target) for op in plan.ops]
        assert actions == [
            ("WIDGET-1", OutboundAction.SET_AVAILABLE, 10),
            ("GADGET", OutboundAction.NO_MATCH, 4),
            ("BAD", OutboundAction.INVALID_QUANTITY, None),
        ]
        assert plan.set_ops[0].inventory_item_id == "111"
        assert plan.source_count == 4
        assert identity.resolve_sku(111) == "WIDGET-1"

    @pytest.mark.asyncio
    async def test_plan_is_idempotent(self, outbound, commerce, stores):
        commerce.add_variant("WIDGET-1", "111")
        save_snapshot(stores[0], [item("1", "WIDGET-1", 10), item("2", "GADGET", 4)])

        first = await outbound.build_plan()
        second = await outbound.build_plan()

        assert first.to_record() == second.to_record()
        assert commerce.set_calls == []

    @pytest.mark.asyncio
    async def test_variant_with_mismatched_item_sku_is_rejected(self, outbound, commerce, stores):
        commerce.add_variant("WIDGET-1", "111")
        commerce.item_skus["111"] = "WIDGET-10"
        save_snapshot(stores[0], [item("1", "WIDGET-1", 10)])

        plan = await outbound.build_plan()

        assert plan.ops[0].action == OutboundAction.NO_MATCH
        assert stores[2].resolve_sku(111) is None

    @pytest.mark.asyncio
    async def test_lookup_error_is_recorded(self, outbound, commerce, stores):
        commerce.lookup_errors.add("WIDGET-1")
        save_snapshot(stores[0], [item("1", "WIDGET-1", 10)])

        plan = await outbound.build_plan()

        assert plan.ops[0].action == OutboundAction.LOOKUP_ERROR
        assert "lookup failed" in plan.ops[0].error

    @pytest.mark.asyncio
    async def test_override_supplies_sku(self, outbound, commerce, stores):
        snapshots, overrides, _ = stores
        commerce.add_variant("SKU-77", "777")
        overrides.set("SKU-77", ListID="1")
        save_snapshot(snapshots, [item("1", "Widget, large", 6)])

        plan = await outbound.build_plan()

        assert (plan.ops[0].sku, plan.ops[0].action) == ("SKU-77", OutboundAction.SET_AVAILABLE)

    @pytest.mark.asyncio
    async def test_missing_sku_and_limit(self, outbound, stores):
        save_snapshot(stores[0], [item("1", None, 1), item("2", None, 2)])

        plan = await outbound.build_plan(limit=1, include_no_sku=True)

        assert [op.action for op in plan.ops] == [OutboundAction.MISSING_SKU]


class TestOutboundApply:

    @pytest.mark.asyncio
    async def test_apply_sets_levels_prunes_and_records(self, outbound, commerce, stores, data_dir):
        snapshots = stores[0]
        commerce.add_variant("WIDGET-1", "111")
        commerce.add_variant("GIZMO", "222")
        commerce.failing_items.add("222")
        save_snapshot(snapshots, [
            item("1", "WIDGET-1", 10),
            item("2", "GIZMO", 5),
            item("3", "UNKNOWN", 1),
        ])

        result = await outbound.apply()

        assert commerce.set_calls == [{"inventory_item_id": "111", "available": 10}]
        assert result.success_count == 1
        assert result.failure_count == 2
        assert result.snapshot_pruned == {"removed": 1, "remaining": 2}
        assert [i["ListID"] for i in snapshots.load().filtered_items] == ["2", "3"]

        record = json.loads((data_dir / "outbound-last-push.json").read_text())
        assert record["success"] == 1
        errors = {r["sku"]: r["error"] for r in record["results"] if not r["ok"]}
        assert errors["UNKNOWN"] == "NO_MATCH"
        assert "set failed" in errors["GIZMO"]
        assert not outbound.lock.locked

    @pytest.mark.asyncio
    async def test_second_apply_pushes_nothing(self, outbound, commerce, stores):
        commerce.add_variant("WIDGET-1", "111")
        save_snapshot(stores[0], [item("1", "WIDGET-1", 10)])

        await outbound.apply()
        second = await outbound.apply()

        assert second.results == []
        assert len(commerce.set_calls) == 1

    @pytest.mark.asyncio
    async def test_lock_conflict_is_distinguished(self, outbound, data_dir):
        holder = FileLock(data_dir / "outbound-sync.lock")
        await holder.acquire()

        with pytest.raises(SyncLockedError) as exc_info:
            await outbound.apply()
        assert exc_info.value.code == "SYNC_LOCKED"
        assert exc_info.value.lock["token"] == holder.token

        with pytest.raises(SyncLockedError):
            await outbound.dry_run()

        await holder.release()
        plan = await outbound.dry_run()
        assert plan.ops == []

    @pytest.mark.asyncio
    async def test_dry_run_ignores_marker_left_by_crashed_holder(self, outbound, data_dir):
        (data_dir / "outbound-sync.lock").write_text(json.dumps({"token": "gone", "acquired_at": "?"}))

        plan = await outbound.dry_run()

        assert plan.ops == []


class TestInitialSweep:

    @pytest.mark.asyncio
    async def test_sweep_pushes_all_items_and_reports_unmatched(self, make_settings, commerce, stores, data_dir):
        settings = make_settings(initial_sweep=True)
        outbound = OutboundSync(settings, commerce, *stores, data_dir)
        commerce.add_variant("WIDGET-1", "111")
        save_snapshot(stores[0], [
            item("1", "WIDGET-1", 10, modified=LAST_WEEK),
            item("2", "GADGET", 4, modified=LAST_WEEK),
            item("3", None, 2, modified=LAST_WEEK),
        ])

        status = await outbound.run_initial_sweep_if_needed()

        assert status["status"] == "completed"
        assert status["operations_planned"] == 1
        assert status["success"] == 1
        assert status["failed"] == 0
        assert status["unmatched_accounting"] == 2
        assert commerce.set_calls == [{"inventory_item_id": "111", "available": 10}]

        report = outbound.read_sweep_unmatched()
        assert report["count"] == 2
        assert {(r["list_id"], r["action"]) for r in report["items"]} == {
            ("2", "NO_MATCH"),
            ("3", "MISSING_SKU"),
        }

        again = await outbound.run_initial_sweep_if_needed()
        assert again == outbound.read_sweep_status()
        assert len(commerce.set_calls) == 1

    @pytest.mark.asyncio
    async def test_sweep_disabled_returns_none(self, outbound):
        assert await outbound.run_initial_sweep_if_needed() is None

    @pytest.mark.asyncio
    async def test_sweep_lock_conflict_records_failure(self, outbound, data_dir):
        holder = FileLock(data_dir / "outbound-sync.lock")
        await holder.acquire()

        with pytest.raises(SyncLockedError):
            await outbound.run_initial_sweep()

        status = outbound.read_sweep_status()
        assert status["status"] == "failed"
        assert status["code"] == "SYNC_LOCKED"
        await holder.release()
