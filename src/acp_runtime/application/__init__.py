"""Application layer."""

from acp_runtime.application.models import (
    PermissionOutcome,
    PermissionRequest,
    SessionModeState,
    SessionResult,
)
from acp_runtime.application.streams import EventStream, Subscription
from acp_runtime.application.updates import StopReason, ToolCall, TurnEnded, Update

__all__ = [
    "EventStream",
    "PermissionOutcome",
    "PermissionRequest",
    "SessionModeState",
    "SessionResult",
    "StopReason",
    "Subscription",
    "ToolCall",
    "TurnEnded",
    "Update",
]
