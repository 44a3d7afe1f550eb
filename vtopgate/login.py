"""
Login orchestrator.

FLOW PER CYCLE (login_max_attempts cycles, default 5):
1. Fetch: GET the prelogin setup page, detect the image captcha, pull the
   image and the single-use _csrf token.
   No captcha, missing image/token, undecodable image or transport error ->
   wait captcha_retry_delay_seconds and refetch. Past
   captcha_fetch_max_attempts (default 10) the login is exhausted.
2. Solve: decode + classify the image locally.
3. Submit: POST credentials + token + guess and classify the response:
     "Invalid LoginId/Password" -> credential failure, stop immediately
     "Invalid Captcha"          -> next cycle with a fresh challenge
     neither marker             -> success, raw body returned
   Transport error on submit -> wait, next cycle.

Nothing is persisted here. The caller owns the session.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass

from vtopgate.challenge import extract_challenge
from vtopgate.config import settings
from vtopgate.errors import (
    CaptchaMismatch,
    ChallengeNotFound,
    CredentialError,
    DecodeError,
    Exhausted,
    PortalError,
    TokenExtractionError,
    TransportError,
)
from vtopgate.imaging import decode_data_uri
from vtopgate.parsers import extract_csrf_token, extract_student_id

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS_MARKER = "Invalid LoginId/Password"
INVALID_CAPTCHA_MARKER = "Invalid Captcha"

INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"
EXHAUSTED_MESSAGE = "Maximum login attempts reached"


class LoginVerdict(enum.Enum):
    CREDENTIALS = "credentials"
    CAPTCHA = "captcha"
    UNKNOWN = "unknown"


# Checked in order; the first marker found decides.
_RESPONSE_MARKERS: tuple[tuple[str, LoginVerdict], ...] = (
    (INVALID_CREDENTIALS_MARKER, LoginVerdict.CREDENTIALS),
    (INVALID_CAPTCHA_MARKER, LoginVerdict.CAPTCHA),
)


def classify_login_response(html: str | None) -> LoginVerdict:
    """Tag a login response by the error marker it carries, if any."""
    if not html:
        return LoginVerdict.UNKNOWN
    for marker, verdict in _RESPONSE_MARKERS:
        if marker in html:
            return verdict
    return LoginVerdict.UNKNOWN


@dataclass(frozen=True)
class AuthContext:
    """What an authenticated portal request needs besides cookies."""
    student_id: str
    csrf_token: str


def extract_auth_context(html: str) -> AuthContext:
    """Pull the student id and the post-login _csrf out of the landing page."""
    student_id = extract_student_id(html)
    csrf_token = extract_csrf_token(html)
    if not student_id or not csrf_token:
        raise TokenExtractionError("Failed to extract required tokens")
    return AuthContext(student_id=student_id, csrf_token=csrf_token)


@dataclass
class LoginResult:
    success: bool
    data: str | None = None
    message: str | None = None
    error: PortalError | None = None
    submits: int = 0

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "message": self.message}


@dataclass(frozen=True)
class SolvedChallenge:
    csrf_token: str
    guess: str


class LoginOrchestrator:
    """Drives the fetch -> solve -> submit cycle against one PortalClient."""

    def __init__(
        self,
        solver,
        max_attempts: int | None = None,
        fetch_max_attempts: int | None = None,
        retry_delay: float | None = None,
    ):
        self._solver = solver
        self._max_attempts = max_attempts or settings.login_max_attempts
        self._fetch_max_attempts = fetch_max_attempts or settings.captcha_fetch_max_attempts
        self._retry_delay = (
            retry_delay if retry_delay is not None else settings.captcha_retry_delay_seconds
        )

    async def solve_challenge(self, client) -> SolvedChallenge:
        """
        Fetch login pages until one yields a captcha we can decode and guess.

        Raises Exhausted after fetch_max_attempts fetches.
        """
        last_err: PortalError | None = None

        for attempt in range(1, self._fetch_max_attempts + 1):
            try:
                html = await client.fetch_login_page()
                challenge = extract_challenge(html)
                image_bytes = decode_data_uri(challenge.image_src)
                guess = await self._solver.solve(image_bytes)
                return SolvedChallenge(csrf_token=challenge.csrf_token, guess=guess)
            except (TransportError, ChallengeNotFound, DecodeError) as e:
                last_err = e
                logger.warning(
                    "Captcha fetch attempt %d/%d failed: %s",
                    attempt, self._fetch_max_attempts, e,
                )
            if attempt < self._fetch_max_attempts:
                await asyncio.sleep(self._retry_delay)

        raise Exhausted(
            f"No solvable captcha after {self._fetch_max_attempts} fetch attempts: {last_err}"
        )

    async def attempt_login(self, username: str, password: str, client) -> LoginResult:
        """
        Log `username` in through `client`, whose cookie jar keeps the session.

        Never raises for portal-side failures; the outcome is in the result.
        """
        submits = 0
        last_err: PortalError | None = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                solved = await self.solve_challenge(client)
            except Exhausted as e:
                logger.error("Login for %s exhausted captcha fetches: %s", username, e)
                return LoginResult(
                    success=False, message=EXHAUSTED_MESSAGE, error=e, submits=submits,
                )

            submits += 1
            try:
                body = await client.submit_login(
                    solved.csrf_token, username, password, solved.guess,
                )
            except TransportError as e:
                last_err = e
                logger.warning(
                    "Login submit attempt %d/%d failed: %s",
                    attempt, self._max_attempts, e,
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._retry_delay)
                continue

            verdict = classify_login_response(body)
            if verdict is LoginVerdict.CREDENTIALS:
                logger.info("Portal rejected credentials for %s", username)
                return LoginResult(
                    success=False,
                    message=INVALID_CREDENTIALS_MESSAGE,
                    error=CredentialError(INVALID_CREDENTIALS_MESSAGE),
                    submits=submits,
                )
            if verdict is LoginVerdict.CAPTCHA:
                last_err = CaptchaMismatch("Portal rejected captcha guess")
                logger.warning(
                    "Captcha rejected for %s (attempt %d/%d), retrying with a fresh challenge",
                    username, attempt, self._max_attempts,
                )
                continue

            logger.info("Login succeeded for %s after %d submit(s)", username, submits)
            return LoginResult(success=True, data=body, submits=submits)

        logger.error(
            "Login for %s failed after %d attempts: %s", username, self._max_attempts, last_err,
        )
        return LoginResult(
            success=False,
            message=EXHAUSTED_MESSAGE,
            error=Exhausted(f"{EXHAUSTED_MESSAGE}: {last_err}"),
            submits=submits,
        )
