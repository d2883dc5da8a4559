"""
Compliance gate for the Lead Engagement Engine.

Consulted synchronously before every outbound send, regardless of flow:
suppression list, per-number rate limit, consent and (optionally) business
hours in the lead's local timezone. Hard blocks raise ComplianceBlocked and
are logged to the dedicated ``compliance`` logger.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from database.models import Lead
from database.repositories import (
    LeadRepository, MessageRepository, PhoneNumberRepository, SuppressionRepository,
)
from database.session import Database

from .errors import ComplianceBlocked

logger = logging.getLogger(__name__)
compliance_logger = logging.getLogger("compliance")

STATE_TIMEZONES = {
    # Eastern
    "CT": "America/New_York", "DE": "America/New_York", "DC": "America/New_York",
    "FL": "America/New_York", "GA": "America/New_York", "IN": "America/Indiana/Indianapolis",
    "ME": "America/New_York", "MD": "America/New_York", "MA": "America/New_York",
    "MI": "America/Detroit", "NH": "America/New_York", "NJ": "America/New_York",
    "NY": "America/New_York", "NC": "America/New_York", "OH": "America/New_York",
    "PA": "America/New_York", "RI": "America/New_York", "SC": "America/New_York",
    "VT": "America/New_York", "VA": "America/New_York", "WV": "America/New_York",
    "KY": "America/New_York",
    # Central
    "AL": "America/Chicago", "AR": "America/Chicago", "IL": "America/Chicago",
    "IA": "America/Chicago", "KS": "America/Chicago", "LA": "America/Chicago",
    "MN": "America/Chicago", "MS": "America/Chicago", "MO": "America/Chicago",
    "NE": "America/Chicago", "ND": "America/Chicago", "OK": "America/Chicago",
    "SD": "America/Chicago", "TN": "America/Chicago", "TX": "America/Chicago",
    "WI": "America/Chicago",
    # Mountain
    "AZ": "America/Phoenix", "CO": "America/Denver", "ID": "America/Boise",
    "MT": "America/Denver", "NM": "America/Denver", "UT": "America/Denver",
    "WY": "America/Denver",
    # Pacific and beyond
    "CA": "America/Los_Angeles", "NV": "America/Los_Angeles", "OR": "America/Los_Angeles",
    "WA": "America/Los_Angeles", "AK": "America/Anchorage", "HI": "Pacific/Honolulu",
}


class ComplianceGate:
    """
    Mandatory pre-send checks.

    ``is_suppressed`` and ``check_rate_limit`` are hard gates. ``enforce_consent``
    only warns unless ``consent_hard_gate`` is set. Business hours are enforced
    only when ``enforce_business_hours`` is set.
    """

    def __init__(
        self,
        database: Database,
        rate_limit_max_sends: int = 1,
        rate_limit_window_minutes: int = 10,
        consent_hard_gate: bool = False,
        enforce_business_hours: bool = False,
        business_hours_start: int = 9,
        business_hours_end: int = 19,
        default_timezone: str = "America/Chicago",
    ):
        self.database = database
        self.rate_limit_max_sends = rate_limit_max_sends
        self.rate_limit_window_minutes = rate_limit_window_minutes
        self.consent_hard_gate = consent_hard_gate
        self.enforce_business_hours = enforce_business_hours
        self.business_hours_start = business_hours_start
        self.business_hours_end = business_hours_end
        self.default_timezone = default_timezone

    async def is_suppressed(self, number: str, channel: str = "sms") -> bool:
        async with self.database.session() as session:
            return await SuppressionRepository(session).is_suppressed(number, channel)

    async def check_rate_limit(
        self,
        number: str,
        window_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """True if another send to ``number`` is allowed within the window."""
        now = now or datetime.utcnow()
        window = window_minutes if window_minutes is not None else self.rate_limit_window_minutes
        async with self.database.session() as session:
            recent = await MessageRepository(session).count_sends_to_number_since(
                number, now - timedelta(minutes=window)
            )
        return recent < self.rate_limit_max_sends

    async def enforce_consent(self, lead_id: str, channel: str = "sms", number: Optional[str] = None) -> bool:
        """
        Verify SMS consent for a lead.

        Consent is verified when the lead exists, has opted in to AI messaging
        and the destination has not opted out.

        Returns:
            True if verified, False if unverifiable (soft gate)

        Raises:
            ComplianceBlocked: consent unverifiable and the hard gate is on
        """
        async with self.database.session() as session:
            lead = await LeadRepository(session).get_by_id(lead_id)
            phone = await PhoneNumberRepository(session).get_primary(lead_id) if lead else None

        verified = bool(lead and lead.ai_opt_in and phone is not None)
        if number and phone is not None and phone.number != number:
            verified = False

        if verified:
            return True
        if self.consent_hard_gate:
            compliance_logger.warning(
                f"BLOCKED consent_unverified lead={lead_id} channel={channel} number={number}"
            )
            raise ComplianceBlocked(
                "Consent could not be verified", reason="consent_unverified", number=number, lead_id=lead_id
            )
        compliance_logger.warning(f"Consent unverified for lead {lead_id} ({channel}), continuing")
        return False

    def timezone_for(self, state: Optional[str]) -> ZoneInfo:
        return ZoneInfo(STATE_TIMEZONES.get((state or "").upper(), self.default_timezone))

    def within_business_hours(self, state: Optional[str], now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        local = now.replace(tzinfo=ZoneInfo("UTC")).astimezone(self.timezone_for(state))
        return self.business_hours_start <= local.hour < self.business_hours_end

    async def check(
        self,
        lead: Lead,
        number: str,
        now: Optional[datetime] = None,
        channel: str = "sms",
    ) -> None:
        """
        Run every gate for one send.

        Raises:
            ComplianceBlocked: on suppression, rate limit, hard consent failure
                or (when enforced) outside business hours
        """
        now = now or datetime.utcnow()

        if await self.is_suppressed(number, channel):
            self._block("suppressed", lead.id, number, "Number is on the suppression list")

        if not await self.check_rate_limit(number, now=now):
            self._block(
                "rate_limited", lead.id, number,
                f"Rate limit of {self.rate_limit_max_sends} per {self.rate_limit_window_minutes} min exceeded",
            )

        await self.enforce_consent(lead.id, channel, number=number)

        if self.enforce_business_hours and not self.within_business_hours(lead.state, now):
            self._block("outside_business_hours", lead.id, number, "Outside business hours for the lead's timezone")

    def _block(self, reason: str, lead_id: str, number: str, message: str) -> None:
        compliance_logger.warning(f"BLOCKED {reason} lead={lead_id} number={number}: {message}")
        raise ComplianceBlocked(message, reason=reason, number=number, lead_id=lead_id)

    async def suppress(self, number: str, reason: str, channel: str = "sms") -> bool:
        async with self.database.session() as session:
            added = await SuppressionRepository(session).add(number, reason, channel)
        if added:
            compliance_logger.warning(f"SUPPRESSED number={number} reason={reason}")
        return added
