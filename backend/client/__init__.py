"""Client-side transport supervision for the chat channels."""

from .supervisor import (
    ABNORMAL_CLOSURE,
    NORMAL_CLOSURE,
    POLICY_VIOLATION,
    ChannelState,
    CloseDecision,
    TransportSupervisor,
)

__all__ = [
    "ABNORMAL_CLOSURE",
    "NORMAL_CLOSURE",
    "POLICY_VIOLATION",
    "ChannelState",
    "CloseDecision",
    "TransportSupervisor",
]
