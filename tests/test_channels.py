"""Tests for the SMS gateways."""

from urllib.parse import parse_qs

import httpx

from api.channels import ChannelMessage, LoggingGateway, TwilioSMSGateway
from scheduler.engine import build_gateway


def _gateway(handler, callback=None):
    return TwilioSMSGateway(
        account_sid="AC123",
        auth_token="secret",
        from_number="+15125550000",
        status_callback_url=callback,
        transport=httpx.MockTransport(handler),
    )


def _message():
    return ChannelMessage(to="+15125550111", body="Hi Sam!", correlation_id="lead-1:initial_contact:0")


class TestTwilioGateway:
    async def test_send_success(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"sid": "SM42", "status": "queued"})

        response = await _gateway(handler, callback="https://crm.example.com/sms/status").send(_message())

        assert response.success is True
        assert response.provider_id == "SM42"
        assert response.status == "queued"
        assert seen[0].url.path == "/2010-04-01/Accounts/AC123/Messages.json"
        form = parse_qs(seen[0].content.decode())
        assert form["To"] == ["+15125550111"]
        assert form["From"] == ["+15125550000"]
        assert form["StatusCallback"] == [
            "https://crm.example.com/sms/status?correlation_id=lead-1:initial_contact:0"
        ]

    async def test_callback_with_query(self):
        seen = []

        def handler(request):
            seen.append(parse_qs(request.content.decode()))
            return httpx.Response(201, json={"sid": "SM43"})

        await _gateway(handler, callback="https://crm.example.com/sms?tenant=1").send(_message())
        assert seen[0]["StatusCallback"][0].endswith("?tenant=1&correlation_id=lead-1:initial_contact:0")

    async def test_rejected(self):
        def handler(request):
            return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

        response = await _gateway(handler).send(_message())
        assert response.success is False
        assert response.status == "rejected"
        assert "Invalid" in response.error

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        response = await _gateway(handler).send(_message())
        assert response.success is False
        assert response.status == "error"

    async def test_health_check(self):
        assert await _gateway(lambda r: httpx.Response(200, json={"sid": "AC123"})).health_check() is True
        assert await _gateway(lambda r: httpx.Response(401, json={})).health_check() is False


class TestLoggingGateway:
    async def test_accepts_everything(self):
        response = await LoggingGateway().send(_message())
        assert response.success is True
        assert response.provider_id == "dry-lead-1:initial_contact:0"


class TestBuildGateway:
    def test_dry_run_without_credentials(self, settings):
        assert isinstance(build_gateway(settings), LoggingGateway)

    def test_twilio_when_configured(self, settings):
        configured = settings.model_copy(update={
            "twilio_account_sid": "AC123",
            "twilio_auth_token": "secret",
            "twilio_from_number": "+15125550000",
        })
        gateway = build_gateway(configured)
        assert isinstance(gateway, TwilioSMSGateway)
        assert gateway.from_number == "+15125550000"
