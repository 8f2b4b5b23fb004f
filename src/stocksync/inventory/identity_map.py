"""Persistent commerce inventory-item id <-> SKU map."""

import math
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from ..storage import read_json, write_json_atomic
from ..utils.logging import get_logger

MAP_FILE = "inventory-item-map.json"

_TRAILING_DIGITS = re.compile(r"(\d+)$")
_GID = re.compile(r"InventoryItem/(\d+)", re.IGNORECASE)


def normalize_id(value: Any) -> Optional[str]:
    """Reduce numeric ids, numeric strings and ``gid://`` references to digits."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if math.isfinite(value) else None
    raw = str(value).strip()
    if not raw:
        return None
    gid = _GID.search(raw)
    if gid:
        return gid.group(1)
    match = _TRAILING_DIGITS.search(raw)
    return match.group(1) if match else raw


def _normalize_sku(value: Any) -> Optional[str]:
    sku = str(value or "").strip()
    return sku or None


class IdentityMap:
    """Map of commerce inventory item ids to SKUs.

    Entries are keyed by normalized numeric id and merge-updated: a new
    observation overwrites the fields it carries and keeps the rest. Reads go
    through an in-memory cache that is refreshed on every write.
    """

    def __init__(self, data_dir: Union[str, Path]):
        self.path = Path(data_dir) / MAP_FILE
        self.logger = get_logger(self.__class__.__name__)
        self._cache: Optional[Dict[str, Dict[str, Any]]] = None

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._cache is None:
            data = read_json(self.path, default=None)
            if isinstance(data, list):
                raw_entries = data
            elif isinstance(data, dict) and isinstance(data.get("entries"), list):
                raw_entries = data["entries"]
            else:
                raw_entries = []
            entries: Dict[str, Dict[str, Any]] = {}
            for entry in raw_entries:
                if not isinstance(entry, dict):
                    continue
                key = normalize_id(entry.get("inventory_item_id"))
                if key and _normalize_sku(entry.get("sku")):
                    entries[key] = {**entry, "inventory_item_id": key}
            self._cache = entries
        return self._cache

    def entries(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._load())

    def remember(self, observations: Iterable[Dict[str, Any]], source: Optional[str] = None) -> int:
        """Merge observations of ``{inventory_item_id, sku, variant_id?}``.

        Observations without an id or SKU are ignored.

        Returns:
            Number of entries added or changed
        """
        entries = self._load()
        now = datetime.now(timezone.utc).isoformat()
        changed = 0

        for observation in observations:
            key = normalize_id(observation.get("inventory_item_id"))
            sku = _normalize_sku(observation.get("sku"))
            if not key or not sku:
                continue

            current = entries.get(key)
            merged = dict(current) if current else {"inventory_item_id": key}
            merged["sku"] = sku
            variant_id = normalize_id(observation.get("variant_id"))
            if variant_id:
                merged["variant_id"] = variant_id
            entry_source = observation.get("source") or source
            if entry_source:
                merged["source"] = entry_source

            if current is None or any(current.get(k) != merged.get(k) for k in ("sku", "variant_id", "source")):
                merged["updated_at"] = now
                entries[key] = merged
                changed += 1

        if changed:
            write_json_atomic(self.path, {"updated_at": now, "entries": list(entries.values())})
            self.logger.info("Identity map updated", changed=changed, total=len(entries))
        return changed

    def resolve_sku(self, inventory_item_id: Any) -> Optional[str]:
        key = normalize_id(inventory_item_id)
        if not key:
            return None
        entry = self._load().get(key)
        return entry["sku"] if entry else None

    def resolve_inventory_item_id(self, sku: Any) -> Optional[str]:
        target = _normalize_sku(sku)
        if not target:
            return None
        for key, entry in self._load().items():
            if entry.get("sku") == target:
                return key
        return None
