"""
Unit tests for the credential service client.
"""

import json

import httpx
import pytest

from shared.circuit_breaker import CircuitBreakerManager
from shared.errors import CredentialUnavailable
from service_broker.app.adapters.credential_client import CredentialServiceClient
from service_broker.app.models import TierKind


def make_client(handler, **kwargs) -> CredentialServiceClient:
    transport = httpx.MockTransport(handler)
    return CredentialServiceClient(
        "http://upstream.test/",
        client=httpx.AsyncClient(transport=transport),
        **kwargs,
    )


class TestCredentialServiceClient:
    """Test cases for CredentialServiceClient."""

    @pytest.mark.asyncio
    async def test_acquire_without_current_value(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True, "token": "tok-1", "expiresIn": 1800000})

        client = make_client(handler)
        issued = await client.renew(TierKind.FREE, client_id="client-1")

        assert issued.value == "tok-1"
        assert issued.ttl_seconds == 1800.0
        assert [r.url.path for r in seen] == ["/token/acquire"]
        assert json.loads(seen[0].content) == {"tier": "free", "clientId": "client-1"}
        assert seen[0].headers["X-Tier"] == "free"
        await client.close()

    @pytest.mark.asyncio
    async def test_refresh_with_current_value(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True, "token": "tok-2", "expiresIn": 3600000})

        client = make_client(handler)
        issued = await client.renew(TierKind.PREMIUM, current_value="tok-1")

        assert issued.value == "tok-2"
        assert [r.url.path for r in seen] == ["/token/refresh"]
        assert seen[0].headers["X-Shared-Token"] == "tok-1"
        assert json.loads(seen[0].content)["currentToken"] == "tok-1"

    @pytest.mark.asyncio
    async def test_refused_refresh_falls_back_to_acquire(self):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path == "/token/refresh":
                return httpx.Response(200, json={"success": False, "error": "revoked"})
            return httpx.Response(200, json={"success": True, "token": "tok-new"})

        client = make_client(handler)
        issued = await client.renew(TierKind.FREE, current_value="tok-old")

        assert issued.value == "tok-new"
        assert paths == ["/token/refresh", "/token/acquire"]

    @pytest.mark.asyncio
    async def test_missing_expiry_uses_default_ttl(self):
        client = make_client(
            lambda request: httpx.Response(200, json={"success": True, "token": "tok"}),
            default_ttl_seconds=900,
        )

        issued = await client.acquire(TierKind.FREE)

        assert issued.ttl_seconds == 900

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, content=b"not json"),
        httpx.Response(200, json={"success": False}),
        httpx.Response(200, json={"success": True}),
        httpx.Response(200, json=["unexpected"]),
    ])
    async def test_bad_responses_are_unavailable(self, response):
        client = make_client(lambda request: response)

        with pytest.raises(CredentialUnavailable) as exc_info:
            await client.acquire(TierKind.FREE)

        assert exc_info.value.tier == "free"

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        client = make_client(handler)

        with pytest.raises(CredentialUnavailable) as exc_info:
            await client.acquire(TierKind.PREMIUM)

        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_error_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = make_client(handler)

        with pytest.raises(CredentialUnavailable):
            await client.acquire(TierKind.FREE)

    @pytest.mark.asyncio
    async def test_breaker_opens_after_repeated_failures(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(503)

        client = make_client(handler, breakers=CircuitBreakerManager(failure_threshold=2, recovery_timeout=60))

        for _ in range(2):
            with pytest.raises(CredentialUnavailable):
                await client.renew(TierKind.FREE)
        with pytest.raises(CredentialUnavailable) as exc_info:
            await client.renew(TierKind.FREE)

        assert len(calls) == 2
        assert "circuit open" in exc_info.value.message
        assert exc_info.value.details["retry_in_seconds"] > 0

    @pytest.mark.asyncio
    async def test_breakers_are_per_tier(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            if body["tier"] == "free":
                return httpx.Response(503)
            return httpx.Response(200, json={"success": True, "token": "premium-tok"})

        client = make_client(handler, breakers=CircuitBreakerManager(failure_threshold=1, recovery_timeout=60))

        with pytest.raises(CredentialUnavailable):
            await client.renew(TierKind.FREE)

        assert (await client.renew(TierKind.PREMIUM)).value == "premium-tok"
