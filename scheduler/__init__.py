"""
Message scheduling and dispatch for the Lead Engagement Engine.

This package handles:
- Initial contact, conversation advancement, aggressive sequence and AI takeover flows
- Compliance gating and outbound dispatch
- The sweep engine (import from ``scheduler.engine``)
"""

from .errors import (
    ComplianceBlocked,
    DeliveryFailure,
    EngagementError,
    FrequencyCapReached,
    GenerationFailure,
    SchedulingNoOp,
    ValidationError,
)

__all__ = [
    "ComplianceBlocked",
    "DeliveryFailure",
    "EngagementError",
    "FrequencyCapReached",
    "GenerationFailure",
    "SchedulingNoOp",
    "ValidationError",
]
