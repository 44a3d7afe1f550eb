"""
VTOP portal HTTP client.

DESIGN PRINCIPLES:
1. One client per principal. It owns its cookie jar exclusively.
2. All calls have timeouts (10s default).
3. Timeouts, connection errors and non-2xx responses raise TransportError.
   Retrying belongs to the login orchestrator, never to this client.
4. Error messages never carry the request URL: the login URL holds the
   password in its query string.
5. All methods are async.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from vtopgate.config import settings
from vtopgate.errors import TransportError

logger = logging.getLogger(__name__)

_FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


def encode_uri_component(value: str) -> str:
    """Percent-encode like JavaScript's encodeURIComponent."""
    return quote(value, safe="-_.!~*'()")


class PortalClient:
    """Async cookie-keeping client for the VTOP portal."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        user_agent: str | None = None,
        setup_csrf_seed: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = (base_url or settings.portal_base_url).rstrip("/")
        seed = setup_csrf_seed or settings.portal_setup_csrf_seed
        self._setup_url = f"{self._base_url}/prelogin/setup?_csrf={seed}&flag=VTOP"
        self._login_url = f"{self._base_url}/login"
        self._client = httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.request_timeout_seconds,
            headers={"User-Agent": user_agent or settings.portal_user_agent},
            follow_redirects=True,
            transport=transport,
        )

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def _send(
        self,
        label: str,
        method: str,
        url: str,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> str:
        try:
            resp = await self._client.request(method, url, params=params, headers=headers)
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise TransportError(f"{label} timed out") from e
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"{label} returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{label} failed: {type(e).__name__}") from e
        return resp.text

    async def fetch_login_page(self) -> str:
        """GET the prelogin setup page that carries the captcha and _csrf."""
        return await self._send("login setup", "GET", self._setup_url)

    async def submit_login(
        self, csrf: str, username: str, password: str, captcha: str
    ) -> str:
        """
        POST credentials as query parameters with an empty body.

        The query string is assembled by hand so the encoding matches what the
        portal's own login form produces.
        """
        url = (
            f"{self._login_url}?_csrf={csrf}"
            f"&username={encode_uri_component(username)}"
            f"&password={encode_uri_component(password)}"
            f"&captchaStr={captcha}"
        )
        return await self._send("login submit", "POST", url, headers=_FORM_HEADERS)

    async def post(self, path: str, params: dict | None = None) -> str:
        """POST to a portal path with query parameters and an empty body."""
        url = f"{self._base_url}/{path.lstrip('/')}"
        return await self._send(path, "POST", url, params=params, headers=_FORM_HEADERS)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
