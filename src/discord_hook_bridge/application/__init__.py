"""Application layer."""

from discord_hook_bridge.application.models import (
    MessageRef,
    PendingRequest,
    RequestKind,
    RequestStatus,
    parse_hook_event,
)

__all__ = [
    "MessageRef",
    "PendingRequest",
    "RequestKind",
    "RequestStatus",
    "parse_hook_event",
]
