"""
SQLAlchemy ORM models for the Lead Engagement Engine.

All persistent entities: leads, phone numbers, the message log, the aggressive
schedule, behavioral triggers, the suppression list and learning analytics.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, Text, ForeignKey,
    JSON, Index, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC; convert offset-aware values."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Base(DeclarativeBase):
    pass


class AIStage(str, enum.Enum):
    """Per-lead AI engagement state."""
    UNCONTACTED = "uncontacted"
    INITIAL_SENT = "initial_sent"
    ENGAGED = "engaged"
    AGGRESSIVE_UNRESPONSIVE = "aggressive_unresponsive"
    SEQUENCE_PAUSED = "sequence_paused"
    TAKEOVER_EXECUTED = "takeover_executed"


class Direction(str, enum.Enum):
    IN = "in"
    OUT = "out"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Lead(Base):
    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=_uuid)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    state = Column(String(2), nullable=True)  # US state code, drives business-hours timezone

    vehicle_interest = Column(Text, nullable=True)
    vehicle_make = Column(String(50), nullable=True)
    vehicle_model = Column(String(50), nullable=True)
    vehicle_year = Column(Integer, nullable=True)

    ai_opt_in = Column(Boolean, default=False, nullable=False)
    ai_stage = Column(String(30), default=AIStage.UNCONTACTED.value, nullable=False)
    sequence_paused = Column(Boolean, default=False, nullable=False)
    pause_reason = Column(String(100), nullable=True)
    next_send_at = Column(DateTime, nullable=True)
    messages_sent_today = Column(Integer, default=0, nullable=False)
    messages_sent_total = Column(Integer, default=0, nullable=False)
    last_ai_sent_at = Column(DateTime, nullable=True)

    pending_human_response = Column(Boolean, default=False, nullable=False)
    response_deadline = Column(DateTime, nullable=True)
    ai_takeover_enabled = Column(Boolean, default=False, nullable=False)
    ai_takeover_delay_minutes = Column(Integer, default=7, nullable=False)

    # Atomic claim held by a sweep while it generates and dispatches
    claimed_by = Column(String(36), nullable=True)
    claimed_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    phone_numbers = relationship("PhoneNumber", back_populates="lead", cascade="all, delete-orphan")
    messages = relationship("Message", back_populates="lead", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_lead_optin_stage", "ai_opt_in", "ai_stage"),
        Index("ix_lead_next_send", "next_send_at"),
        Index("ix_lead_pending_human", "pending_human_response", "response_deadline"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class PhoneNumber(Base):
    __tablename__ = "phone_numbers"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    number = Column(String(20), nullable=False, index=True)
    is_primary = Column(Boolean, default=False, nullable=False)
    status = Column(String(15), default="active")  # active, failed, opted_out
    failed_attempts = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    lead = relationship("Lead", back_populates="phone_numbers")


class Message(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    direction = Column(String(3), nullable=False)  # in, out
    body = Column(Text, nullable=False)
    to_number = Column(String(20), nullable=True)
    sent_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ai_generated = Column(Boolean, default=False, nullable=False)
    delivery_status = Column(String(10), default=DeliveryStatus.PENDING.value, nullable=False)
    provider_id = Column(String(64), nullable=True)
    error = Column(Text, nullable=True)
    correlation_id = Column(String(200), nullable=True)
    strategy = Column(String(40), nullable=True)

    lead = relationship("Lead", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("correlation_id", name="uq_message_correlation"),
        Index("ix_msg_lead_sent", "lead_id", "sent_at"),
        Index("ix_msg_to_sent", "to_number", "sent_at"),
    )


class AggressiveScheduleEntry(Base):
    __tablename__ = "aggressive_message_schedule"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    day = Column(Integer, nullable=False)  # 1..14
    message_index = Column(Integer, nullable=False)
    scheduled_at = Column(DateTime, nullable=False)
    strategy_tag = Column(String(30), nullable=False)
    sent = Column(Boolean, default=False, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    message_id = Column(String(36), nullable=True)
    skip_reason = Column(String(50), nullable=True)
    claimed_by = Column(String(36), nullable=True)
    claimed_until = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_sched_due", "sent", "scheduled_at"),
    )


class BehavioralTrigger(Base):
    __tablename__ = "behavioral_triggers"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    trigger_type = Column(String(30), nullable=False)
    urgency_level = Column(String(10), nullable=False)
    confidence = Column(Float, default=0.0)
    context = Column(JSON, default=dict)
    recommended_action = Column(String(100), nullable=True)
    detected_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_trigger_lead_type", "lead_id", "trigger_type", "detected_at"),
    )


class SuppressedNumber(Base):
    __tablename__ = "suppression_list"

    id = Column(String(36), primary_key=True, default=_uuid)
    number = Column(String(20), nullable=False, unique=True)
    channel = Column(String(10), default="sms")
    reason = Column(String(50), nullable=True)  # opt_out, auto_failed_delivery, manual
    created_at = Column(DateTime, default=datetime.utcnow)


class MessageAnalytics(Base):
    __tablename__ = "message_analytics"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), nullable=False, index=True)
    message_id = Column(String(36), nullable=True)
    template_id = Column(String(60), nullable=True)
    sent_at = Column(DateTime, default=datetime.utcnow)
    hour_of_day = Column(Integer, nullable=False)
    day_of_week = Column(Integer, nullable=False)
    ai_generated = Column(Boolean, default=True)
    response_received = Column(Boolean, default=False)
    response_time_minutes = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_analytics_lead_sent", "lead_id", "sent_at"),
    )


class CommunicationPattern(Base):
    __tablename__ = "communication_patterns"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), nullable=False, unique=True)
    messages_sent = Column(Integer, default=0)
    responses = Column(Integer, default=0)
    avg_response_minutes = Column(Float, nullable=True)
    avg_sentiment = Column(Float, nullable=True)
    message_frequency = Column(String(10), default="medium")  # high, medium, low
    first_message_at = Column(DateTime, nullable=True)
    last_response_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class LearningOutcome(Base):
    __tablename__ = "learning_outcomes"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), nullable=False, index=True)
    outcome_type = Column(String(30), nullable=False)  # conversion, appointment_booked
    value = Column(Float, nullable=True)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)


class OptimizationInsight(Base):
    __tablename__ = "optimization_insights"

    id = Column(String(36), primary_key=True, default=_uuid)
    insight_type = Column(String(15), nullable=False)  # timing, content, frequency, targeting
    confidence = Column(Float, default=0.0)
    impact = Column(String(10), default="medium")
    recommendation = Column(Text, nullable=False)
    expected_improvement = Column(Float, default=0.0)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
