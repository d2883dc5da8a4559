"""
Error taxonomy for the engagement scheduler.

Every per-lead failure in a sweep is one of these. The engine catches them
per lead so a single bad lead never aborts the sweep.
"""

from typing import Optional


class EngagementError(Exception):
    """Base class for engagement engine errors."""

    def __init__(self, message: str, lead_id: Optional[str] = None):
        super().__init__(message)
        self.lead_id = lead_id


class ValidationError(EngagementError):
    """Required input is missing (no phone number, unknown lead...). Abort this lead only."""


class ComplianceBlocked(EngagementError):
    """Destination is suppressed or rate limited. Never retried within a sweep."""

    def __init__(self, message: str, reason: str, number: Optional[str] = None, lead_id: Optional[str] = None):
        super().__init__(message, lead_id=lead_id)
        self.reason = reason
        self.number = number


class GenerationFailure(EngagementError):
    """Text generation errored or returned nothing usable."""


class DeliveryFailure(EngagementError):
    """The messaging gateway rejected or failed the send."""

    def __init__(self, message: str, message_id: Optional[str] = None, lead_id: Optional[str] = None):
        super().__init__(message, lead_id=lead_id)
        self.message_id = message_id


class SchedulingNoOp(EngagementError):
    """Lead already contacted, already claimed or otherwise not due. Not an error."""


class FrequencyCapReached(SchedulingNoOp):
    """Lead already received the maximum AI messages in the rolling 24h window."""
