"""Tracking of adjustments sent to the accounting system but not yet confirmed."""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from ..storage import read_json, write_json_atomic
from ..utils.logging import get_logger

PENDING_FILE = "pending-adjustments.json"


def _number(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def _same_sku(a: Any, b: Any) -> bool:
    return str(a or "").strip().lower() == str(b or "").strip().lower()


@dataclass
class PendingAdjustment:
    """An in-flight adjustment for one SKU."""

    sku: str
    job_id: Optional[str] = None
    source: str = "unknown"
    delta: Optional[float] = None
    available: Optional[float] = None
    accounting_qty: Optional[float] = None
    target: Optional[float] = None
    inventory_item_id: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    error: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> Optional["PendingAdjustment"]:
        sku = str(record.get("sku") or "").strip()
        if not sku:
            return None
        entry = cls(
            sku=sku,
            job_id=record.get("job_id"),
            source=record.get("source") or "unknown",
            delta=_number(record.get("delta")),
            available=_number(record.get("available")),
            accounting_qty=_number(record.get("accounting_qty")),
            target=_number(record.get("target")),
            inventory_item_id=record.get("inventory_item_id"),
            error=record.get("error"),
        )
        if record.get("created_at"):
            entry.created_at = record["created_at"]
        return entry

    def to_record(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


class PendingAdjustmentTracker:
    """Durable table of pending adjustments, one entry per SKU.

    The inbound reconciler skips any SKU listed here. Entries are removed when
    their job is confirmed and kept, annotated with the error, when it fails.
    """

    def __init__(self, data_dir: Union[str, Path]):
        self.path = Path(data_dir) / PENDING_FILE
        self.logger = get_logger(self.__class__.__name__)

    def list_entries(self) -> List[PendingAdjustment]:
        data = read_json(self.path, default=None)
        if isinstance(data, dict):
            data = data.get("entries")
        if not isinstance(data, list):
            return []
        entries = []
        for record in data:
            if isinstance(record, dict):
                entry = PendingAdjustment.from_record(record)
                if entry is not None:
                    entries.append(entry)
        return entries

    def _save(self, entries: List[PendingAdjustment]) -> None:
        write_json_atomic(self.path, {
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "entries": [entry.to_record() for entry in entries],
        })

    def track(self, job_id: str, additions: Iterable[PendingAdjustment]) -> List[PendingAdjustment]:
        """Record entries for a job, replacing any existing entry for the same SKU."""
        new_entries = []
        for entry in additions:
            if not entry.sku.strip():
                continue
            if entry.job_id is None:
                entry.job_id = job_id
            new_entries.append(entry)
        if not new_entries:
            return self.list_entries()

        kept = [
            existing for existing in self.list_entries()
            if not any(_same_sku(existing.sku, added.sku) for added in new_entries)
        ]
        merged = kept + new_entries
        self._save(merged)
        self.logger.info("Pending adjustments tracked", job_id=job_id, skus=[e.sku for e in new_entries])
        return merged

    def clear_by_job_id(self, job_id: Optional[str]) -> int:
        if not job_id:
            return 0
        entries = self.list_entries()
        kept = [entry for entry in entries if entry.job_id != job_id]
        removed = len(entries) - len(kept)
        if removed:
            self._save(kept)
            self.logger.info("Pending adjustments cleared", job_id=job_id, removed=removed)
        return removed

    def clear_by_skus(self, skus: Iterable[str]) -> int:
        targets = [str(sku).strip() for sku in skus if str(sku or "").strip()]
        if not targets:
            return 0
        entries = self.list_entries()
        kept = [entry for entry in entries if not any(_same_sku(entry.sku, sku) for sku in targets)]
        removed = len(entries) - len(kept)
        if removed:
            self._save(kept)
            self.logger.info("Pending adjustments cleared", skus=targets, removed=removed)
        return removed

    def record_failure(self, job_id: Optional[str], error: str) -> int:
        """Annotate a job's entries with an error, keeping them pending."""
        if not job_id:
            return 0
        entries = self.list_entries()
        touched = 0
        for entry in entries:
            if entry.job_id == job_id:
                entry.error = error
                touched += 1
        if touched:
            self._save(entries)
            self.logger.warning("Pending adjustments failed", job_id=job_id, entries=touched, error=error)
        return touched

    def pending_skus(self) -> Set[str]:
        """Lowercased SKUs with an adjustment in flight."""
        return {entry.sku.strip().lower() for entry in self.list_entries() if entry.sku.strip()}
