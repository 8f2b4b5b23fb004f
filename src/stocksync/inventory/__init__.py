"""Inventory state: snapshots, SKU resolution, identity map and pending adjustments."""

from .snapshot import (
    InventorySnapshot,
    SnapshotStore,
    day_window,
    filter_items_for_day,
    parse_timestamp
)
from .sku import SkuOverrides, pick_sku, resolve_sku_to_item
from .identity_map import IdentityMap, normalize_id
from .pending import PendingAdjustment, PendingAdjustmentTracker

__all__ = [
    "InventorySnapshot",
    "SnapshotStore",
    "day_window",
    "filter_items_for_day",
    "parse_timestamp",
    "SkuOverrides",
    "pick_sku",
    "resolve_sku_to_item",
    "IdentityMap",
    "normalize_id",
    "PendingAdjustment",
    "PendingAdjustmentTracker",
]
