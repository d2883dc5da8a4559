"""Shared fixtures for Lead Engagement Engine tests."""

import itertools
import os
from datetime import datetime
from typing import Any, Dict, List

import pytest
import pytest_asyncio

# Ensure we use test settings
os.environ.setdefault("LLM_PROVIDER", "none")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from api.channels.base import ChannelMessage, ChannelResponse, MessagingGateway  # noqa: E402
from config.settings import Settings  # noqa: E402
from database.repositories import LeadRepository  # noqa: E402
from database.session import Database  # noqa: E402
from llm.message_generator import GeneratedMessage, MessageGenerator  # noqa: E402
from scheduler.engine import build_engine  # noqa: E402
from scheduler.errors import GenerationFailure  # noqa: E402

# Tuesday 10:00 in Chicago (CDT)
NOW = datetime(2026, 3, 10, 15, 0)

_phone_counter = itertools.count(100)


class FakeGateway(MessagingGateway):
    """Records every send; fails while ``fail`` is set."""

    def __init__(self):
        self.sent: List[ChannelMessage] = []
        self.fail = False

    async def send(self, message: ChannelMessage) -> ChannelResponse:
        self.sent.append(message)
        if self.fail:
            return ChannelResponse(success=False, status="undelivered", error="carrier rejected")
        return ChannelResponse(success=True, provider_id=f"SM{len(self.sent):04d}", status="queued")

    async def health_check(self) -> bool:
        return True


class FakeGenerator(MessageGenerator):
    """Deterministic generator that remembers the contexts it was given."""

    def __init__(self):
        self.contexts: List[Dict[str, Any]] = []
        self.fail = False

    async def generate(self, context: Dict[str, Any]) -> GeneratedMessage:
        self.contexts.append(context)
        if self.fail:
            raise GenerationFailure("model unavailable", lead_id=context.get("lead_id"))
        return GeneratedMessage(
            message=f"Hi {context.get('first_name') or 'there'}, quick question about the {context.get('vehicle')}",
            confidence=0.9,
            reasoning=f"fake {context.get('strategy')}",
        )


@pytest.fixture
def settings():
    return Settings(
        llm_provider="none",
        database_url="sqlite:///:memory:",
        send_delay_min_seconds=0,
        send_delay_max_seconds=0,
        learning_batch_size=100,
        twilio_account_sid=None,
        twilio_auth_token=None,
        twilio_from_number=None,
    )


@pytest_asyncio.fixture
async def database():
    db = Database("sqlite:///:memory:")
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def engine(settings, database, gateway, generator):
    return build_engine(settings, database, gateway=gateway, generator=generator)


@pytest.fixture
def make_lead(database):
    """Factory creating an opted-in lead with a primary phone number."""
    async def _make(phone: str = None, **kwargs):
        values = {
            "first_name": "Sam",
            "vehicle_interest": "2024 Chevrolet Silverado",
            "ai_opt_in": True,
            "state": "TX",
            "created_at": NOW.replace(hour=9),
        }
        values.update(kwargs)
        number = phone or f"+1512555{next(_phone_counter):04d}"
        async with database.session() as session:
            return await LeadRepository(session).create(phone=number, **values)
    return _make
