"""
Unit Tests for server access

Tests cover:
1. Retry with exponential backoff
2. HTTP request and response mapping
"""

import json

import httpx
import pytest
from decimal import Decimal

from arena_ledger.client import HttpServerClient, InMemoryServer, RetryingClient, RetryPolicy, ServerClient
from arena_ledger.errors import NetworkSyncError

from conftest import TOKEN


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class RejectingServer(ServerClient):
    def __init__(self, status_code):
        self.status_code = status_code
        self.calls = 0

    async def fetch_user_totals(self, auth_token):
        self.calls += 1
        raise NetworkSyncError("rejected", status_code=self.status_code)

    async def push_token_total(self, auth_token, new_total, replace):
        raise NotImplementedError

    async def push_credits_total(self, auth_token, new_total):
        raise NotImplementedError


class TestRetryingClient:
    """Tests for the retry wrapper."""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, server):
        """Test that two failures followed by a success return the result."""
        sleep = RecordingSleep()
        client = RetryingClient(server, RetryPolicy(attempts=3, base_delay=0.5), sleep=sleep)
        server.fail_fetches = 2

        totals = await client.fetch_user_totals(TOKEN)

        assert totals.global_token_total == Decimal("50")
        assert server.fetch_calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, server):
        """Test that the last error is raised once attempts run out."""
        client = RetryingClient(server, RetryPolicy(attempts=3, base_delay=0), sleep=RecordingSleep())
        server.fail_pushes = 5

        with pytest.raises(NetworkSyncError):
            await client.push_token_total(TOKEN, Decimal("1"), replace=True)
        assert server.push_attempts == 3
        assert server.totals(TOKEN).global_token_total == Decimal("50")

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self):
        """Test that a 4xx response fails on the first attempt."""
        inner = RejectingServer(401)
        client = RetryingClient(inner, sleep=RecordingSleep())
        with pytest.raises(NetworkSyncError):
            await client.fetch_user_totals(TOKEN)
        assert inner.calls == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retried(self):
        """Test that 429 is treated as transient."""
        inner = RejectingServer(429)
        client = RetryingClient(inner, sleep=RecordingSleep())
        with pytest.raises(NetworkSyncError):
            await client.fetch_user_totals(TOKEN)
        assert inner.calls == 3


class TestInMemoryServer:
    """Tests for the simulated backend."""

    @pytest.mark.asyncio
    async def test_replace_and_additive_pushes(self):
        """Test that replace overwrites and additive adds."""
        server = InMemoryServer()
        server.seed(TOKEN, global_token_total="50")
        await server.push_token_total(TOKEN, Decimal("70"), replace=True)
        assert server.totals(TOKEN).global_token_total == Decimal("70")
        await server.push_token_total(TOKEN, Decimal("5"), replace=False)
        assert server.totals(TOKEN).global_token_total == Decimal("75")


class TestHttpServerClient:
    """Tests for the httpx backend client."""

    @pytest.mark.asyncio
    async def test_fetch_user_totals(self):
        """Test the GET /users mapping and auth header."""
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["token"] = request.headers.get("x-auth-token")
            return httpx.Response(200, json={"user": {"earns": 12.5, "credit_count": 3}})

        client = HttpServerClient("https://game.test/api", transport=httpx.MockTransport(handler))
        totals = await client.fetch_user_totals(TOKEN)
        await client.aclose()

        assert seen == {"path": "/api/users", "token": TOKEN}
        assert totals.global_token_total == Decimal("12.5")
        assert totals.credits_total == Decimal("3")

    @pytest.mark.asyncio
    async def test_push_token_total(self):
        """Test the PATCH body for a replace push."""
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "user": {"earns": 70}})

        client = HttpServerClient("https://game.test/api", transport=httpx.MockTransport(handler))
        result = await client.push_token_total(TOKEN, Decimal("70.00"), replace=True)
        await client.aclose()

        assert seen["method"] == "PATCH"
        assert seen["path"] == "/api/users/updateEarnCount"
        assert seen["body"] == {"earn": 70.0, "replace": True}
        assert result.success is True
        assert result.total == Decimal("70")

    @pytest.mark.asyncio
    async def test_push_credits_total(self):
        """Test the PATCH body for a credits push."""
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True})

        client = HttpServerClient("https://game.test/api", transport=httpx.MockTransport(handler))
        result = await client.push_credits_total(TOKEN, Decimal("10.50"))
        await client.aclose()

        assert seen["path"] == "/api/users/updateCreditCount"
        assert seen["body"] == {"credit_count": 10.5}
        assert result.success is True
        assert result.total is None

    @pytest.mark.asyncio
    async def test_server_error_carries_status(self):
        """Test that a 5xx becomes a NetworkSyncError with the status code."""
        client = HttpServerClient(
            "https://game.test/api", transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )
        with pytest.raises(NetworkSyncError) as exc_info:
            await client.fetch_user_totals(TOKEN)
        await client.aclose()
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_malformed_amount(self):
        """Test that a non-numeric total is reported as a sync error."""
        client = HttpServerClient(
            "https://game.test/api",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"earns": "lots"})),
        )
        with pytest.raises(NetworkSyncError):
            await client.fetch_user_totals(TOKEN)
        await client.aclose()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
