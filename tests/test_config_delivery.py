"""
Tests for HttpConfigDeliveryService — token reuse, resource URLs and error mapping.
Run: pytest tests/test_config_delivery.py -v
"""
import json
from datetime import datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from console_backend.integrations import AccessToken, HttpConfigDeliveryService
from console_backend.publishing.exceptions import ExternalServiceFailure

BASE_URL = "https://tardis.example.net"
TOKEN_URL = "https://auth.example.net/oauth2/token"
T0 = datetime(2026, 3, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


class TardisHandler:
    """MockTransport handler recording requests; resource responses are configurable."""

    def __init__(self, token_body=None, resource_status=200, resource_body=None):
        self.requests = []
        self.token_body = token_body if token_body is not None else {"access_token": "tok-1", "expires_in": 3600}
        self.resource_status = resource_status
        self.resource_body = resource_body if resource_body is not None else {"ok": True}
        self.token_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == TOKEN_URL:
            self.token_calls += 1
            body = dict(self.token_body)
            if "access_token" in body:
                body["access_token"] = f"tok-{self.token_calls}"
            return httpx.Response(200, json=body)
        return httpx.Response(self.resource_status, json=self.resource_body)


def _service(handler, clock=None):
    return HttpConfigDeliveryService(
        base_url=BASE_URL + "/",
        api_version="2",
        token_url=TOKEN_URL,
        client_id="console",
        client_secret="secret",
        transport=httpx.MockTransport(handler),
        clock=clock or FakeClock(),
    )


def _token():
    return AccessToken(token="abc", expires_at=T0 + timedelta(hours=1))


# ══════════════════════════════════════════════════════════════════
# TOKENS
# ══════════════════════════════════════════════════════════════════


class TestAuthenticate:

    @pytest.mark.asyncio
    async def test_client_credentials_grant(self):
        handler = TardisHandler()
        token = await _service(handler).authenticate()

        assert token.token == "tok-1"
        assert token.expires_at == T0 + timedelta(seconds=3600)
        request = handler.requests[0]
        assert request.method == "POST"
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["client_credentials"]
        assert form["client_id"] == ["console"]
        assert form["client_secret"] == ["secret"]

    @pytest.mark.asyncio
    async def test_token_reused_while_valid(self):
        handler = TardisHandler()
        clock = FakeClock()
        service = _service(handler, clock)

        first = await service.authenticate()
        clock.now = T0 + timedelta(minutes=54, seconds=59)
        second = await service.authenticate()

        assert second.token == first.token
        assert handler.token_calls == 1

    @pytest.mark.asyncio
    async def test_token_refetched_near_expiry(self):
        handler = TardisHandler()
        clock = FakeClock()
        service = _service(handler, clock)

        await service.authenticate()
        clock.now = T0 + timedelta(minutes=55)
        second = await service.authenticate()

        assert second.token == "tok-2"
        assert handler.token_calls == 2

    @pytest.mark.asyncio
    async def test_missing_access_token(self):
        handler = TardisHandler(token_body={"error": "invalid_client"})
        with pytest.raises(ExternalServiceFailure):
            await _service(handler).authenticate()

    def test_is_reusable_margin(self):
        token = AccessToken(token="t", expires_at=T0 + timedelta(minutes=5))
        assert token.is_reusable(T0 - timedelta(seconds=1)) is True
        assert token.is_reusable(T0) is False


# ══════════════════════════════════════════════════════════════════
# RESOURCES
# ══════════════════════════════════════════════════════════════════


class TestResources:

    def test_resource_url(self):
        service = _service(TardisHandler())
        url = service.resource_url("stg", "roku", "svod", "app-copy", "roku", "US")
        assert url == f"{BASE_URL}/api/resource/v2/stg/roku/svod/app-copy/roku/us"

    def test_resource_url_without_platform_or_region(self):
        service = _service(TardisHandler())
        url = service.resource_url("prod", "web", "svod", "campaign")
        assert url == f"{BASE_URL}/api/resource/v2/prod/web/svod/campaign"

    @pytest.mark.asyncio
    async def test_deploy_puts_payload(self):
        handler = TardisHandler()
        payload = {"moduleId": "mod-1", "languages": {"en": {"headline": "Watch"}}}

        ok = await _service(handler).deploy(
            "stg", "roku", "svod", "app-copy", payload, _token(), platform="roku", region="CA",
        )

        assert ok is True
        request = handler.requests[0]
        assert request.method == "PUT"
        assert str(request.url) == f"{BASE_URL}/api/resource/v2/stg/roku/svod/app-copy/roku/ca"
        assert request.headers["Authorization"] == "Bearer abc"
        assert json.loads(request.content) == payload

    @pytest.mark.asyncio
    async def test_deploy_server_error(self):
        handler = TardisHandler(resource_status=500, resource_body={"error": "boom"})
        with pytest.raises(ExternalServiceFailure) as exc_info:
            await _service(handler).deploy("stg", "roku", "svod", "sku", {}, _token(), region="us")
        assert exc_info.value.context["status_code"] == 500

    @pytest.mark.asyncio
    async def test_check_connection_accepts_not_found(self):
        handler = TardisHandler(resource_status=404, resource_body={})
        assert await _service(handler).check_connection(_token()) is True
        assert handler.requests[0].method == "GET"

    @pytest.mark.asyncio
    async def test_check_connection_unauthorized(self):
        handler = TardisHandler(resource_status=401, resource_body={})
        with pytest.raises(ExternalServiceFailure):
            await _service(handler).check_connection(_token())

    @pytest.mark.asyncio
    async def test_fetch_record(self):
        handler = TardisHandler(resource_body={"moduleId": "mod-1"})
        record = await _service(handler).fetch_record("prod", "roku", "svod", "sku", _token(), region="us")
        assert record == {"moduleId": "mod-1"}

    @pytest.mark.asyncio
    async def test_fetch_missing_record(self):
        handler = TardisHandler(resource_status=404, resource_body={})
        assert await _service(handler).fetch_record("prod", "roku", "svod", "sku", _token()) is None

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        service = HttpConfigDeliveryService(
            base_url=BASE_URL, api_version="2", token_url=TOKEN_URL,
            client_id="console", client_secret="secret", transport=httpx.MockTransport(unreachable),
        )
        with pytest.raises(ExternalServiceFailure):
            await service.authenticate()
