"""
Remote server access.

Every server call goes through ``RetryingClient`` so retry and backoff live
in one place. ``HttpServerClient`` talks to the game backend with httpx;
``InMemoryServer`` simulates it for local play and tests.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Optional

import httpx

from .errors import NetworkSyncError
from .models import PushResult, UserTotals

log = logging.getLogger(__name__)


class ServerClient(ABC):
    @abstractmethod
    async def fetch_user_totals(self, auth_token: str) -> UserTotals: ...

    @abstractmethod
    async def push_token_total(self, auth_token: str, new_total: Decimal, replace: bool) -> PushResult: ...

    @abstractmethod
    async def push_credits_total(self, auth_token: str, new_total: Decimal) -> PushResult: ...

    async def aclose(self) -> None:
        pass


@dataclass
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.5

    def delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    def should_retry(self, error: NetworkSyncError) -> bool:
        # client errors other than rate limiting will not change on retry
        code = error.status_code
        return code is None or code >= 500 or code == 429


class RetryingClient(ServerClient):
    def __init__(
        self,
        inner: ServerClient,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.inner = inner
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def _call(self, operation: str, call: Callable[[], Awaitable[Any]]):
        attempts = max(1, self.policy.attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await call()
            except NetworkSyncError as e:
                if attempt >= attempts or not self.policy.should_retry(e):
                    log.error("%s failed after %d attempt(s): %s", operation, attempt, e)
                    raise
                delay = self.policy.delay(attempt)
                log.warning("%s failed (attempt %d of %d): %s; retrying in %.2fs", operation, attempt, attempts, e, delay)
                await self._sleep(delay)

    async def fetch_user_totals(self, auth_token: str) -> UserTotals:
        return await self._call("fetch_user_totals", lambda: self.inner.fetch_user_totals(auth_token))

    async def push_token_total(self, auth_token: str, new_total: Decimal, replace: bool) -> PushResult:
        return await self._call(
            "push_token_total", lambda: self.inner.push_token_total(auth_token, new_total, replace)
        )

    async def push_credits_total(self, auth_token: str, new_total: Decimal) -> PushResult:
        return await self._call(
            "push_credits_total", lambda: self.inner.push_credits_total(auth_token, new_total)
        )

    async def aclose(self) -> None:
        await self.inner.aclose()


def _decimal(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        result = Decimal(str(value))
    except InvalidOperation as e:
        raise NetworkSyncError(f"Malformed amount from server: {value!r}") from e
    if not result.is_finite():
        raise NetworkSyncError(f"Malformed amount from server: {value!r}")
    return result


class HttpServerClient(ServerClient):
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, auth_token: str, payload: Optional[dict] = None) -> dict:
        try:
            response = await self._client.request(
                method, path, json=payload, headers={"x-auth-token": auth_token}
            )
        except httpx.HTTPError as e:
            raise NetworkSyncError(f"{method} {path} failed: {e}") from e

        if response.status_code not in (200, 201, 204):
            raise NetworkSyncError(
                f"{method} {path} returned {response.status_code}", status_code=response.status_code
            )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise NetworkSyncError(f"{method} {path} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise NetworkSyncError(f"{method} {path} returned unexpected payload")
        return data

    @staticmethod
    def _user(data: dict) -> dict:
        user = data.get("user")
        return user if isinstance(user, dict) else data

    async def fetch_user_totals(self, auth_token: str) -> UserTotals:
        user = self._user(await self._request("GET", "/users", auth_token))
        earns = user.get("earns", user.get("earn"))
        return UserTotals(global_token_total=_decimal(earns), credits_total=_decimal(user.get("credit_count")))

    async def push_token_total(self, auth_token: str, new_total: Decimal, replace: bool) -> PushResult:
        data = await self._request(
            "PATCH", "/users/updateEarnCount", auth_token, {"earn": float(new_total), "replace": replace}
        )
        user = self._user(data)
        earns = user.get("earns", user.get("earn"))
        return PushResult(
            success=bool(data.get("success", True)),
            total=_decimal(earns) if earns is not None else None,
        )

    async def push_credits_total(self, auth_token: str, new_total: Decimal) -> PushResult:
        data = await self._request(
            "PATCH", "/users/updateCreditCount", auth_token, {"credit_count": float(new_total)}
        )
        user = self._user(data)
        credits = user.get("credit_count")
        return PushResult(
            success=bool(data.get("success", True)),
            total=_decimal(credits) if credits is not None else None,
        )


class InMemoryServer(ServerClient):
    """Simulated backend with optional latency and injectable failures."""

    def __init__(self, latency: float = 0.0):
        self.accounts: dict[str, UserTotals] = {}
        self.latency = latency
        self.fail_fetches = 0
        self.fail_pushes = 0
        self.fetch_calls = 0
        self.push_attempts = 0
        self.pushes: list[dict] = []
        self.closed = False

    def seed(self, auth_token: str, global_token_total="0", credits_total="0") -> None:
        self.accounts[auth_token] = UserTotals(
            global_token_total=Decimal(str(global_token_total)),
            credits_total=Decimal(str(credits_total)),
        )

    def totals(self, auth_token: str) -> UserTotals:
        return self.accounts.get(auth_token, UserTotals())

    async def aclose(self) -> None:
        self.closed = True

    async def _simulate_latency(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)

    async def fetch_user_totals(self, auth_token: str) -> UserTotals:
        await self._simulate_latency()
        self.fetch_calls += 1
        if self.fail_fetches > 0:
            self.fail_fetches -= 1
            raise NetworkSyncError("Simulated fetch failure")
        return self.totals(auth_token).model_copy()

    async def push_token_total(self, auth_token: str, new_total: Decimal, replace: bool) -> PushResult:
        await self._simulate_latency()
        self.push_attempts += 1
        if self.fail_pushes > 0:
            self.fail_pushes -= 1
            raise NetworkSyncError("Simulated push failure")

        current = self.totals(auth_token)
        total = new_total if replace else current.global_token_total + new_total
        self.accounts[auth_token] = current.model_copy(update={"global_token_total": total})
        self.pushes.append({"kind": "token", "total": new_total, "replace": replace})
        return PushResult(success=True, total=total)

    async def push_credits_total(self, auth_token: str, new_total: Decimal) -> PushResult:
        await self._simulate_latency()
        self.push_attempts += 1
        if self.fail_pushes > 0:
            self.fail_pushes -= 1
            raise NetworkSyncError("Simulated push failure")

        current = self.totals(auth_token)
        self.accounts[auth_token] = current.model_copy(update={"credits_total": new_total})
        self.pushes.append({"kind": "credits", "total": new_total, "replace": True})
        return PushResult(success=True, total=new_total)
