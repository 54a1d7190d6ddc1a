"""
Unit tests for the HTTP user directory client and its circuit breaker.
"""

import pytest
import httpx

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, CircuitBreakerState
from shared.errors import CollaboratorUnavailableError
from service_door_access.app.context.client import HttpUserDirectory


def directory_with(handler, **kwargs):
    return HttpUserDirectory(
        "http://users.local/", timeout=1.0, transport=httpx.MockTransport(handler), **kwargs
    )


class TestHttpUserDirectory:
    """Test cases for HttpUserDirectory."""

    @pytest.mark.asyncio
    async def test_get_user_context(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={
                "role": "TRAINER",
                "membership_status": "ACTIVE",
                "active": True
            })

        user = await directory_with(handler).get_user_context("tenant-1", "user-7")

        assert seen == ["/tenants/tenant-1/users/user-7/access-context"]
        assert user.user_id == "user-7"
        assert user.role == "TRAINER"
        assert user.membership_status == "ACTIVE"
        assert user.active is True

    @pytest.mark.asyncio
    async def test_user_without_membership(self):
        directory = directory_with(lambda request: httpx.Response(200, json={"role": "ADMIN"}))

        user = await directory.get_user_context("tenant-1", "user-7")

        assert user.membership_status is None
        assert user.active is True

    @pytest.mark.asyncio
    async def test_unknown_user(self):
        directory = directory_with(lambda request: httpx.Response(404))

        assert await directory.get_user_context("tenant-1", "ghost") is None

    @pytest.mark.asyncio
    async def test_server_error(self):
        directory = directory_with(lambda request: httpx.Response(500))

        with pytest.raises(CollaboratorUnavailableError) as exc_info:
            await directory.get_user_context("tenant-1", "user-7")
        assert exc_info.value.details == {"status_code": 500}

    @pytest.mark.asyncio
    async def test_breaker_opens_after_failures(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        directory = directory_with(handler, failure_threshold=2, recovery_timeout=60.0)

        for _ in range(2):
            with pytest.raises(httpx.ConnectError):
                await directory.get_user_context("tenant-1", "user-7")

        with pytest.raises(CircuitBreakerOpenError):
            await directory.get_user_context("tenant-1", "user-7")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_health_check(self):
        healthy = directory_with(lambda request: httpx.Response(200, json={"status": "ok"}))
        unhealthy = directory_with(lambda request: httpx.Response(503))

        assert await healthy.health_check() is True
        assert await unhealthy.health_check() is False


class TestCircuitBreaker:
    """Test cases for CircuitBreaker."""

    @pytest.fixture
    def clock(self):
        class Clock:
            now = 0.0

            def __call__(self):
                return self.now

        return Clock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker("test", failure_threshold=2, recovery_timeout=10.0, clock=clock)

    async def fail(self):
        raise RuntimeError("boom")

    async def succeed(self):
        return "ok"

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breaker):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(self.fail)

        assert breaker.state == CircuitBreakerState.OPEN
        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await breaker.call(self.succeed)
        assert exc_info.value.code == "CIRCUIT_OPEN"

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, breaker):
        with pytest.raises(RuntimeError):
            await breaker.call(self.fail)
        assert await breaker.call(self.succeed) == "ok"
        with pytest.raises(RuntimeError):
            await breaker.call(self.fail)

        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_after_recovery_timeout(self, breaker, clock):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(self.fail)

        clock.now = 10.0
        assert breaker.state == CircuitBreakerState.HALF_OPEN
        assert await breaker.call(self.succeed) == "ok"
        assert breaker.get_state()["state"] == "closed"

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, breaker, clock):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(self.fail)

        clock.now = 10.0
        with pytest.raises(RuntimeError):
            await breaker.call(self.fail)

        assert breaker.state == CircuitBreakerState.OPEN

    @pytest.mark.asyncio
    async def test_uncounted_exceptions_pass_through(self, clock):
        breaker = CircuitBreaker(
            "test", failure_threshold=1, counted_exceptions=(ConnectionError,), clock=clock
        )

        with pytest.raises(RuntimeError):
            await breaker.call(self.fail)

        assert breaker.state == CircuitBreakerState.CLOSED
