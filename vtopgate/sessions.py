"""
Per-principal session registry.

RULES:
1. At most one session per principal. Each session owns its PortalClient
   (and so its cookie jar); clients are never shared.
2. Logins are serialised per principal: concurrent callers queue on the
   session's login lock and reuse the context the first caller produced.
3. A session idle for longer than `idle_timeout` is expired. Lookups replace
   it; sweep() evicts it in the background.
4. invalidate() drops a session at once. Callers use it after any failure
   so the next request logs in from scratch.
5. The map is only mutated under the registry lock. Evicted clients are
   closed after the lock is released.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import math
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from vtopgate.config import settings
from vtopgate.errors import Exhausted, PortalError, TokenExtractionError
from vtopgate.login import AuthContext, LoginResult, extract_auth_context
from vtopgate.portal_client import PortalClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], PortalClient]
LoginFn = Callable[[str, str, PortalClient], Awaitable[LoginResult]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Session:
    principal: str
    client: PortalClient
    created_at: datetime
    # Registry clock reading (monotonic by default); see SessionRegistry.last_used_at.
    last_used: float
    auth: AuthContext | None = None
    _password_digest: bytes | None = field(default=None, repr=False)
    _salt: bytes = field(default_factory=lambda: secrets.token_bytes(16), repr=False)
    login_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def is_authenticated(self) -> bool:
        return self.auth is not None

    def touch(self, now: float) -> None:
        self.last_used = now

    def _digest(self, password: str) -> bytes:
        return hashlib.sha256(self._salt + password.encode("utf-8")).digest()

    def remember_password(self, password: str) -> None:
        """Keep a salted digest so later requests can prove the same password."""
        self._password_digest = self._digest(password)

    def password_matches(self, password: str) -> bool:
        if self._password_digest is None:
            return False
        return hmac.compare_digest(self._password_digest, self._digest(password))

    async def submit_authenticated_request(self, path: str, params: dict | None = None) -> str:
        """POST to `path` with the student id and _csrf attached."""
        if self.auth is None:
            raise PortalError(f"Session for {self.principal} is not authenticated")
        query = {"authorizedID": self.auth.student_id, "_csrf": self.auth.csrf_token}
        query.update(params or {})
        return await self.client.post(path, query)


class SessionRegistry:
    """Map of principal -> Session with idle expiry and serialised logins."""

    def __init__(
        self,
        client_factory: ClientFactory,
        login: LoginFn,
        idle_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client_factory = client_factory
        self._login = login
        self._idle_timeout = (
            idle_timeout if idle_timeout is not None else settings.session_timeout_seconds
        )
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, principal: str) -> bool:
        return principal in self._sessions

    @property
    def idle_timeout(self) -> float:
        return self._idle_timeout

    def get(self, principal: str) -> Session | None:
        """Peek at a session without refreshing it."""
        return self._sessions.get(principal)

    def _expired(self, session: Session, now: float) -> bool:
        return now - session.last_used > self._idle_timeout

    def expires_in(self, session: Session) -> int:
        """Whole seconds left before `session` goes idle, never negative."""
        remaining = self._idle_timeout - (self._clock() - session.last_used)
        return max(0, math.floor(remaining))

    def last_used_at(self, session: Session) -> datetime:
        """Wall-clock time of the last use, derived from the registry clock."""
        idle = max(0.0, self._clock() - session.last_used)
        return _utcnow() - timedelta(seconds=idle)

    async def _close(self, session: Session) -> None:
        try:
            await session.client.close()
        except Exception:
            logger.warning("Failed to close client for %s", session.principal, exc_info=True)

    async def get_or_create(self, principal: str) -> Session:
        """Return the live session for `principal`, replacing an expired one."""
        stale: Session | None = None
        async with self._lock:
            now = self._clock()
            session = self._sessions.get(principal)
            if session is not None and not self._expired(session, now):
                session.touch(now)
                logger.debug("Reusing session for %s", principal)
                return session
            if session is not None:
                stale = self._sessions.pop(principal)
                logger.info("Session for %s expired, replacing it", principal)

            session = Session(
                principal=principal,
                client=self._client_factory(),
                created_at=_utcnow(),
                last_used=now,
            )
            self._sessions[principal] = session
            logger.info("Created session for %s", principal)

        if stale is not None:
            await self._close(stale)
        return session

    async def mark_used(self, principal: str) -> bool:
        """Refresh the idle clock. Returns False if there is no session."""
        async with self._lock:
            session = self._sessions.get(principal)
            if session is None:
                return False
            session.touch(self._clock())
            return True

    async def invalidate(self, principal: str, session: Session | None = None) -> bool:
        """
        Drop the session for `principal`.

        With `session` given, only drop it if it is still the registered one,
        so a late failure cannot evict a newer session.
        """
        async with self._lock:
            current = self._sessions.get(principal)
            if current is None or (session is not None and current is not session):
                return False
            del self._sessions[principal]
        await self._close(current)
        logger.info("Invalidated session for %s", principal)
        return True

    async def sweep(self) -> int:
        """Evict idle sessions. Sessions mid-login are left alone."""
        async with self._lock:
            now = self._clock()
            expired = [
                principal for principal, session in self._sessions.items()
                if self._expired(session, now) and not session.login_lock.locked()
            ]
            evicted = [self._sessions.pop(principal) for principal in expired]

        for session in evicted:
            await self._close(session)
        if evicted:
            logger.info(
                "Cleaned up %d expired sessions. Active sessions: %d",
                len(evicted), len(self._sessions),
            )
        return len(evicted)

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await self._close(session)
        if sessions:
            logger.info("Closed %d sessions", len(sessions))

    async def authenticate(self, principal: str, password: str) -> tuple[Session, bool]:
        """
        Return an authenticated session for `principal`, and whether this call
        performed the login.

        Concurrent callers for one principal share a single login. A cached
        session is reused only for the password that created it; any other
        password drops it and logs in fresh.

        Raises CredentialError, Exhausted or TokenExtractionError; the session
        is invalidated before raising.
        """
        while True:
            session = await self.get_or_create(principal)
            async with session.login_lock:
                if self._sessions.get(principal) is not session:
                    # Invalidated or replaced while we waited.
                    continue

                if session.is_authenticated:
                    if session.password_matches(password):
                        return session, False
                    logger.warning(
                        "Password differs from cached session for %s, logging in fresh",
                        principal,
                    )
                    await self.invalidate(principal, session)
                    continue

                logger.info("No authenticated session for %s, logging in", principal)
                result = await self._login(principal, password, session.client)
                if not result.success:
                    await self.invalidate(principal, session)
                    raise result.error or Exhausted(result.message or "Login failed")

                try:
                    session.auth = extract_auth_context(result.data or "")
                except TokenExtractionError:
                    logger.error("Login for %s succeeded but tokens are missing", principal)
                    await self.invalidate(principal, session)
                    raise

                session.remember_password(password)
                session.touch(self._clock())
                return session, True
