"""Core sync engine: session protocol, reconciliation and service lifecycle."""

from .outbound import (
    OutboundAction,
    OutboundApplyResult,
    OutboundOp,
    OutboundPlan,
    OutboundResult,
    OutboundSync,
    SyncLockedError
)
from .inbound import InboundReconciler, aggregate_adjustments, normalize_inventory_levels
from .responses import ResponseRecorder
from .session import SessionHandler, SessionState
from .service import SyncService

__all__ = [
    "OutboundAction",
    "OutboundApplyResult",
    "OutboundOp",
    "OutboundPlan",
    "OutboundResult",
    "OutboundSync",
    "SyncLockedError",
    "InboundReconciler",
    "aggregate_adjustments",
    "normalize_inventory_levels",
    "ResponseRecorder",
    "SessionHandler",
    "SessionState",
    "SyncService",
]
