"""Job records exchanged between the queue, dispatcher and session handler."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobType(str, Enum):
    """Kinds of work the accounting client can be asked to perform."""

    INVENTORY_QUERY = "inventoryQuery"
    INVENTORY_ADJUST = "inventoryAdjust"
    RAW = "raw"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Job(BaseModel):
    """A unit of work waiting in the queue.

    ``payload`` depends on ``type``:

    - inventoryQuery: ``{"max_returned": int | None}``
    - inventoryAdjust: ``{"lines": [...], "account": str | None}`` where each
      line carries ``list_id`` or ``full_name`` plus ``quantity_difference``
    - raw: ``{"qbxml": str}``
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: JobType
    payload: Dict[str, Any] = Field(default_factory=dict)
    source: str = "api"
    created_at: datetime = Field(default_factory=_utcnow)
    skus: List[str] = Field(default_factory=list)
    triggered_by: Optional[str] = None

    @classmethod
    def inventory_query(cls, max_returned: Optional[int] = None, **kwargs) -> "Job":
        return cls(type=JobType.INVENTORY_QUERY, payload={"max_returned": max_returned}, **kwargs)

    @classmethod
    def inventory_adjust(
        cls,
        lines: List[Dict[str, Any]],
        account: Optional[str] = None,
        **kwargs
    ) -> "Job":
        return cls(type=JobType.INVENTORY_ADJUST, payload={"lines": lines, "account": account}, **kwargs)

    @classmethod
    def raw(cls, qbxml: str, **kwargs) -> "Job":
        return cls(type=JobType.RAW, payload={"qbxml": qbxml}, **kwargs)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
