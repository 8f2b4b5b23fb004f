"""Inventory snapshot storage and the same-day modification filter."""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from ..storage import read_json, write_json_atomic
from ..utils.logging import get_logger

SNAPSHOT_FILE = "last-inventory.json"
FILTER_MODE = "TimeModifiedSameDay"


def local_now() -> datetime:
    return datetime.now().astimezone()


def day_window(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Return ``[start, end)`` of the local day containing ``now``.

    The timezone of ``now`` defines "local"; naive values are taken as
    system-local time.
    """
    now = now or local_now()
    if now.tzinfo is None:
        now = now.astimezone()
    start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
    return start, start + timedelta(days=1)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an accounting timestamp; naive values are interpreted as local time."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def relevant_timestamp(item: Dict[str, Any]) -> Optional[datetime]:
    return parse_timestamp(item.get("TimeModified") or item.get("TimeCreated"))


def filter_items_for_day(
    items: Iterable[Dict[str, Any]],
    now: Optional[datetime] = None
) -> Tuple[List[Dict[str, Any]], datetime, datetime]:
    """Keep items whose last modification falls within today's local window.

    Returns:
        (filtered items, window start, window end exclusive)
    """
    start, end = day_window(now)
    filtered = []
    for item in items:
        stamp = relevant_timestamp(item)
        if stamp is not None and start <= stamp < end:
            filtered.append(item)
    return filtered, start, end


@dataclass
class InventorySnapshot:
    """Parsed inventory plus the subset modified today."""

    items: List[Dict[str, Any]] = field(default_factory=list)
    filtered_items: List[Dict[str, Any]] = field(default_factory=list)
    generated_at: Optional[str] = None
    window_start: Optional[str] = None
    window_end: Optional[str] = None
    timezone_offset_minutes: Optional[int] = None

    @classmethod
    def build(cls, items: List[Dict[str, Any]], now: Optional[datetime] = None) -> "InventorySnapshot":
        now = now or local_now()
        if now.tzinfo is None:
            now = now.astimezone()
        filtered, start, end = filter_items_for_day(items, now)
        offset = now.utcoffset()
        return cls(
            items=list(items),
            filtered_items=filtered,
            generated_at=now.isoformat(),
            window_start=start.isoformat(),
            window_end=end.isoformat(),
            timezone_offset_minutes=int(offset.total_seconds() // 60) if offset is not None else None,
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "count": len(self.filtered_items),
            "filtered_at": self.generated_at,
            "filter": {
                "mode": FILTER_MODE,
                "timezone_offset_minutes": self.timezone_offset_minutes,
                "start": self.window_start,
                "end_exclusive": self.window_end,
                "source_count": len(self.items),
            },
            "items": self.filtered_items,
            "source_generated_at": self.generated_at,
            "source_items": self.items,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "InventorySnapshot":
        window = record.get("filter") or {}
        filtered = record.get("items") if isinstance(record.get("items"), list) else []
        source = record.get("source_items") if isinstance(record.get("source_items"), list) else []
        return cls(
            items=source or list(filtered),
            filtered_items=filtered,
            generated_at=record.get("source_generated_at") or record.get("filtered_at"),
            window_start=window.get("start"),
            window_end=window.get("end_exclusive"),
            timezone_offset_minutes=window.get("timezone_offset_minutes"),
        )


class SnapshotStore:
    """Persists the latest inventory snapshot."""

    def __init__(self, data_dir: Union[str, Path]):
        self.path = Path(data_dir) / SNAPSHOT_FILE
        self.logger = get_logger(self.__class__.__name__)

    def save(self, snapshot: InventorySnapshot) -> InventorySnapshot:
        write_json_atomic(self.path, snapshot.to_record())
        self.logger.info(
            "Inventory snapshot saved",
            total_received=len(snapshot.items),
            kept=len(snapshot.filtered_items),
            start=snapshot.window_start,
            end=snapshot.window_end
        )
        return snapshot

    def load(self) -> InventorySnapshot:
        record = read_json(self.path, default=None, validate=lambda d: isinstance(d, dict))
        if record is None:
            return InventorySnapshot()
        return InventorySnapshot.from_record(record)

    def prune_filtered(self, list_ids: Set[str], indices: Optional[Set[int]] = None) -> Dict[str, Optional[int]]:
        """Drop filtered items that were pushed successfully.

        Args:
            list_ids: ListIDs of pushed items
            indices: Positions in the filtered list of pushed items without a ListID

        Returns:
            ``{"removed": n, "remaining": m}``
        """
        indices = indices or set()
        if not list_ids and not indices:
            return {"removed": 0, "remaining": None}

        snapshot = self.load()
        original = snapshot.filtered_items
        remaining = [
            item for idx, item in enumerate(original)
            if idx not in indices and str(item.get("ListID")) not in list_ids
        ]
        removed = len(original) - len(remaining)
        if removed:
            snapshot.filtered_items = remaining
            write_json_atomic(self.path, snapshot.to_record())
            self.logger.info("Snapshot pruned", before=len(original), after=len(remaining))
        return {"removed": removed, "remaining": len(remaining)}
