"""
Tests for vtopgate.sessions: per-principal session registry.

A fake monotonic clock drives idle expiry; logins are AsyncMocks returning
LoginResults, so call counts show exactly how many logins ran.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from vtopgate.errors import CredentialError, Exhausted, PortalError, TokenExtractionError
from vtopgate.login import LoginResult
from vtopgate.sessions import SessionRegistry


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _client_factory():
    def _make():
        client = MagicMock()
        client.close = AsyncMock()
        client.post = AsyncMock(return_value="<html>ok</html>")
        return client

    return MagicMock(side_effect=_make)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def factory():
    return _client_factory()


@pytest.fixture
def success_login(landing_page):
    return AsyncMock(return_value=LoginResult(success=True, data=landing_page(), submits=1))


def _registry(factory, login, clock, idle_timeout=300) -> SessionRegistry:
    return SessionRegistry(factory, login, idle_timeout=idle_timeout, clock=clock)


# ── Lifecycle ──────────────────────────────────────────────


@pytest.mark.unit
class TestGetOrCreate:
    """Tests for get_or_create and idle expiry."""

    async def test_creates_once_per_principal(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        first = await registry.get_or_create("alice")
        second = await registry.get_or_create("alice")
        assert first is second
        assert factory.call_count == 1
        assert len(registry) == 1

    async def test_principals_get_distinct_clients(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        alice = await registry.get_or_create("alice")
        bob = await registry.get_or_create("bob")
        assert alice.client is not bob.client

    async def test_expired_session_is_replaced_and_closed(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        old = await registry.get_or_create("alice")
        clock.advance(301)
        new = await registry.get_or_create("alice")
        assert new is not old
        old.client.close.assert_awaited_once()

    async def test_use_within_timeout_keeps_session(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        first = await registry.get_or_create("alice")
        clock.advance(200)
        await registry.mark_used("alice")
        clock.advance(200)
        assert await registry.get_or_create("alice") is first

    async def test_mark_used_unknown_principal(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        assert await registry.mark_used("nobody") is False

    async def test_expires_in_counts_down(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        session = await registry.get_or_create("alice")
        clock.advance(100.5)
        assert registry.expires_in(session) == 199
        clock.advance(1000)
        assert registry.expires_in(session) == 0

    async def test_last_used_at_follows_registry_clock(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        session = await registry.get_or_create("alice")
        clock.advance(120)

        idle = datetime.now(timezone.utc) - registry.last_used_at(session)
        assert timedelta(seconds=119) < idle < timedelta(seconds=125)

        await registry.mark_used("alice")
        idle = datetime.now(timezone.utc) - registry.last_used_at(session)
        assert idle < timedelta(seconds=5)


@pytest.mark.unit
class TestSweepAndInvalidate:
    """Tests for sweep, invalidate and close_all."""

    async def test_sweep_removes_only_idle_sessions(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        idle = await registry.get_or_create("idle")
        clock.advance(250)
        await registry.get_or_create("active")
        clock.advance(100)

        removed = await registry.sweep()

        assert removed == 1
        assert "idle" not in registry
        assert "active" in registry
        idle.client.close.assert_awaited_once()

    async def test_sweep_after_timeout_removes_unrefreshed(self, factory, success_login, clock):
        """A session left alone for longer than the timeout is gone after one sweep."""
        registry = _registry(factory, success_login, clock)
        await registry.get_or_create("alice")
        clock.advance(300.001)
        await registry.sweep()
        assert registry.get("alice") is None

    async def test_sweep_skips_session_mid_login(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        session = await registry.get_or_create("alice")
        clock.advance(1000)
        async with session.login_lock:
            assert await registry.sweep() == 0
        assert "alice" in registry

    async def test_invalidate_closes_client(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        session = await registry.get_or_create("alice")
        assert await registry.invalidate("alice") is True
        assert "alice" not in registry
        session.client.close.assert_awaited_once()

    async def test_invalidate_ignores_stale_reference(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        old = await registry.get_or_create("alice")
        await registry.invalidate("alice")
        await registry.get_or_create("alice")
        assert await registry.invalidate("alice", old) is False
        assert "alice" in registry

    async def test_close_all(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        a = await registry.get_or_create("a")
        b = await registry.get_or_create("b")
        await registry.close_all()
        assert len(registry) == 0
        a.client.close.assert_awaited_once()
        b.client.close.assert_awaited_once()

    async def test_close_failure_is_logged_not_raised(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        session = await registry.get_or_create("alice")
        session.client.close.side_effect = RuntimeError("boom")
        assert await registry.invalidate("alice") is True


# ── Authentication ─────────────────────────────────────────


@pytest.mark.unit
class TestAuthenticate:
    """Tests for SessionRegistry.authenticate."""

    async def test_first_call_logs_in(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        session, is_new = await registry.authenticate("alice", "pw")
        assert is_new is True
        assert session.auth.student_id == "21BCE0001"
        assert session.auth.csrf_token == "csrf-session-1"
        success_login.assert_awaited_once_with("alice", "pw", session.client)

    async def test_second_call_reuses_session(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        first, _ = await registry.authenticate("alice", "pw")
        second, is_new = await registry.authenticate("alice", "pw")
        assert second is first
        assert is_new is False
        assert success_login.await_count == 1

    async def test_concurrent_requests_share_one_login(self, factory, landing_page, clock):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_login(username, password, client):
            started.set()
            await release.wait()
            return LoginResult(success=True, data=landing_page(), submits=1)

        login = AsyncMock(side_effect=slow_login)
        registry = _registry(factory, login, clock)

        tasks = [asyncio.create_task(registry.authenticate("alice", "pw")) for _ in range(5)]
        await started.wait()
        release.set()
        results = await asyncio.gather(*tasks)

        assert login.await_count == 1
        assert factory.call_count == 1
        sessions = {id(session) for session, _ in results}
        assert len(sessions) == 1
        assert sum(1 for _, is_new in results if is_new) == 1

    async def test_different_password_forces_fresh_login(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        first, _ = await registry.authenticate("alice", "pw")
        second, is_new = await registry.authenticate("alice", "other-pw")
        assert second is not first
        assert is_new is True
        assert success_login.await_count == 2
        first.client.close.assert_awaited_once()

    async def test_credential_failure_raises_and_drops_session(self, factory, clock):
        login = AsyncMock(return_value=LoginResult(
            success=False, message="Invalid credentials",
            error=CredentialError("Invalid credentials"), submits=1,
        ))
        registry = _registry(factory, login, clock)

        with pytest.raises(CredentialError):
            await registry.authenticate("alice", "bad")
        assert "alice" not in registry

    async def test_exhausted_login_raises(self, factory, clock):
        login = AsyncMock(return_value=LoginResult(
            success=False, message="Maximum login attempts reached",
            error=Exhausted("Maximum login attempts reached"),
        ))
        registry = _registry(factory, login, clock)

        with pytest.raises(Exhausted):
            await registry.authenticate("alice", "pw")
        assert len(registry) == 0

    async def test_missing_tokens_raise_and_drop_session(self, factory, clock):
        login = AsyncMock(return_value=LoginResult(success=True, data="<html>no ids</html>"))
        registry = _registry(factory, login, clock)

        with pytest.raises(TokenExtractionError):
            await registry.authenticate("alice", "pw")
        assert "alice" not in registry

    async def test_expired_session_logs_in_again(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        await registry.authenticate("alice", "pw")
        clock.advance(301)
        _, is_new = await registry.authenticate("alice", "pw")
        assert is_new is True
        assert success_login.await_count == 2


@pytest.mark.unit
class TestSessionRequests:
    """Tests for Session.submit_authenticated_request."""

    async def test_adds_student_id_and_csrf(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        session, _ = await registry.authenticate("alice", "pw")

        await session.submit_authenticated_request("processViewTimeTable", {"semesterSubId": "S1"})

        session.client.post.assert_awaited_once_with(
            "processViewTimeTable",
            {"authorizedID": "21BCE0001", "_csrf": "csrf-session-1", "semesterSubId": "S1"},
        )

    async def test_unauthenticated_session_refuses(self, factory, success_login, clock):
        registry = _registry(factory, success_login, clock)
        session = await registry.get_or_create("alice")
        with pytest.raises(PortalError, match="not authenticated"):
            await session.submit_authenticated_request("processViewTimeTable")
