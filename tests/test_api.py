"""Tests for the engine HTTP API."""

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from database.repositories import LeadRepository


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as client:
        yield client


def _create_lead(client, **kwargs):
    async def _create():
        async with client.app.state.database.session() as session:
            lead = await LeadRepository(session).create(
                phone="+15125550900", first_name="Sam", vehicle_interest="Chevrolet Tahoe", ai_opt_in=True, **kwargs
            )
            return lead.id
    return client.portal.call(_create)


class TestService:
    def test_root(self, client):
        data = client.get("/").json()
        assert data["status"] == "operational"
        assert data["service"] == "Lead Engagement Engine API"

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["services"]["engine"] is True
        assert data["services"]["gateway"] is True
        assert data["services"]["llm_provider"] == "none"


class TestEngineRoutes:
    def test_process_empty(self, client):
        response = client.post("/api/v1/engine/process", json={"now": "2026-03-10T15:00:00"})
        assert response.status_code == 200
        data = response.json()
        assert data["messages_sent"] == 0
        assert set(data["strategies"]) == {
            "initial_contact", "conversation_advancement", "aggressive_sequence", "ai_takeover",
        }

    def test_process_sends_initial_contact(self, client):
        _create_lead(client)
        data = client.post("/api/v1/engine/process", json={"now": "2026-03-10T15:00:00"}).json()
        assert data["strategies"]["initial_contact"]["sent"] == 1

    def test_inbound_unknown_lead(self, client):
        response = client.post("/api/v1/engine/leads/missing/inbound", json={"body": "hi"})
        assert response.status_code == 404

    def test_inbound_empty_body(self, client):
        response = client.post("/api/v1/engine/leads/missing/inbound", json={"body": ""})
        assert response.status_code == 422

    def test_inbound_arms_takeover(self, client):
        lead_id = _create_lead(client, ai_takeover_enabled=True)
        response = client.post(
            f"/api/v1/engine/leads/{lead_id}/inbound",
            json={"body": "Is it still available?", "received_at": "2026-03-10T15:00:00"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["lead_id"] == lead_id
        assert data["pending_human_response"] is True
        assert data["response_deadline"] == "2026-03-10T15:07:00"

    def test_inbound_offset_timestamp(self, client):
        lead_id = _create_lead(client, ai_takeover_enabled=True)
        response = client.post(
            f"/api/v1/engine/leads/{lead_id}/inbound",
            json={"body": "Is it still available?", "received_at": "2026-03-10T10:00:00-05:00"},
        )
        assert response.status_code == 200
        assert response.json()["response_deadline"] == "2026-03-10T15:07:00"

    def test_sequence_lifecycle(self, client):
        lead_id = _create_lead(client)
        started = client.post(f"/api/v1/engine/leads/{lead_id}/aggressive-sequence").json()
        assert started == {"lead_id": lead_id, "entries": 35, "status": "scheduled"}

        paused = client.post(f"/api/v1/engine/leads/{lead_id}/aggressive-sequence/pause", json={"reason": "vacation"})
        assert paused.json()["paused"] is True

        resumed = client.post(f"/api/v1/engine/leads/{lead_id}/aggressive-sequence/resume").json()
        assert resumed["status"] == "resumed"
        assert resumed["entries"] == 35

    def test_sequence_unknown_lead(self, client):
        assert client.post("/api/v1/engine/leads/missing/aggressive-sequence").status_code == 404
        assert client.post("/api/v1/engine/leads/missing/aggressive-sequence/pause").status_code == 404

    def test_lead_views(self, client):
        lead_id = _create_lead(client)

        prediction = client.get(f"/api/v1/engine/leads/{lead_id}/prediction").json()
        assert 0 <= prediction["prediction"]["conversion_probability"] <= 1

        analysis = client.get(f"/api/v1/engine/leads/{lead_id}/analysis").json()
        assert analysis["vehicle_interest"]["model"] == "tahoe"

        context = client.get(f"/api/v1/engine/leads/{lead_id}/triggers/context").json()
        assert "context" in context

        assert client.get("/api/v1/engine/leads/missing/prediction").status_code == 404
        assert client.get("/api/v1/engine/leads/missing/analysis").status_code == 404

    def test_triggers_and_insights(self, client):
        assert client.get("/api/v1/engine/triggers/pending").json() == []
        assert client.post("/api/v1/engine/triggers/missing/processed").status_code == 404
        assert client.get("/api/v1/engine/insights").json() == []
