"""SKU selection and SKU -> accounting item resolution."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from ..storage import read_json, write_json_atomic
from ..utils.logging import get_logger

OVERRIDES_FILE = "sku-overrides.json"
OVERRIDE_KEYS = ("ListID", "FullName", "Name")


def pick_sku(item: Optional[Dict[str, Any]], fields: Sequence[str]) -> Optional[str]:
    """Return the first non-empty candidate field of an item."""
    if not isinstance(item, dict):
        return None
    for name in fields:
        value = item.get(name)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _lower(value: Any) -> str:
    return str(value or "").strip().lower()


class SkuOverrides:
    """Manual SKU -> accounting item table.

    Each entry is ``{"sku": ..., "ListID"|"FullName"|"Name": ...}``; the first
    reference key present wins.
    """

    def __init__(self, data_dir: Union[str, Path]):
        self.path = Path(data_dir) / OVERRIDES_FILE
        self.logger = get_logger(self.__class__.__name__)

    def load(self) -> List[Dict[str, Any]]:
        data = read_json(self.path, default=None, validate=lambda d: isinstance(d, dict))
        if not data or not isinstance(data.get("items"), list):
            return []
        return [entry for entry in data["items"] if isinstance(entry, dict) and _lower(entry.get("sku"))]

    def save(self, entries: List[Dict[str, Any]]) -> Dict[str, Any]:
        payload = {
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "items": entries,
        }
        write_json_atomic(self.path, payload)
        self.logger.info("SKU overrides saved", count=len(entries))
        return payload

    def set(self, sku: str, **reference: str) -> Dict[str, Any]:
        """Add or replace the override for ``sku``.

        Args:
            sku: Commerce SKU
            **reference: One of ListID, FullName or Name
        """
        ref = {key: value for key, value in reference.items() if key in OVERRIDE_KEYS and value}
        if not _lower(sku) or not ref:
            raise ValueError("An override needs a SKU and one of ListID, FullName or Name")
        entries = [entry for entry in self.load() if _lower(entry.get("sku")) != _lower(sku)]
        entry = {"sku": sku.strip(), **ref}
        entries.append(entry)
        self.save(entries)
        return entry

    def remove(self, sku: str) -> bool:
        entries = self.load()
        kept = [entry for entry in entries if _lower(entry.get("sku")) != _lower(sku)]
        if len(kept) == len(entries):
            return False
        self.save(kept)
        return True

    def find(self, sku: str, entries: Optional[List[Dict[str, Any]]] = None) -> Optional[Dict[str, Any]]:
        target = _lower(sku)
        for entry in entries if entries is not None else self.load():
            if _lower(entry.get("sku")) == target:
                return entry
        return None

    def sku_for_item(
        self,
        item: Dict[str, Any],
        entries: Optional[List[Dict[str, Any]]] = None
    ) -> Optional[str]:
        """Reverse lookup: the overridden SKU pointing at ``item``, if any."""
        for entry in entries if entries is not None else self.load():
            if _override_matches(entry, item):
                return str(entry["sku"]).strip()
        return None


def _override_matches(entry: Dict[str, Any], item: Dict[str, Any]) -> bool:
    if entry.get("ListID"):
        return item.get("ListID") == entry["ListID"]
    if entry.get("FullName"):
        return _lower(item.get("FullName")) == _lower(entry["FullName"])
    if entry.get("Name"):
        return _lower(item.get("Name")) == _lower(entry["Name"])
    return False


def resolve_sku_to_item(
    items: Sequence[Dict[str, Any]],
    sku: Optional[str],
    fields: Sequence[str],
    overrides: Optional[List[Dict[str, Any]]] = None
) -> Optional[Dict[str, Any]]:
    """Find the accounting item for a commerce SKU.

    An override for the SKU is authoritative: if it points at an item that is
    not present, the SKU stays unresolved. Otherwise the candidate fields are
    compared case-insensitively in priority order.
    """
    target = _lower(sku)
    if not target:
        return None

    for entry in overrides or []:
        if _lower(entry.get("sku")) == target:
            return next((item for item in items if _override_matches(entry, item)), None)

    for name in fields:
        for item in items:
            if _lower(item.get(name)) == target:
                return item
    return None
