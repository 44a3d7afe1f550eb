"""
Tests for vtopgate.portal_client: HTTP transport to the portal.

All HTTP goes through httpx.MockTransport; nothing leaves the process.
"""

from __future__ import annotations

import httpx
import pytest

from vtopgate.errors import TransportError
from vtopgate.portal_client import PortalClient, encode_uri_component

BASE = "https://portal.test/vtop"


def _client(handler) -> PortalClient:
    return PortalClient(
        base_url=BASE,
        setup_csrf_seed="seed-123",
        user_agent="test-agent",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.unit
class TestEncodeUriComponent:
    """Matches JavaScript's encodeURIComponent."""

    def test_reserved_characters_escaped(self):
        assert encode_uri_component("a&b=c/d?e") == "a%26b%3Dc%2Fd%3Fe"

    def test_unreserved_marks_kept(self):
        assert encode_uri_component("-_.!~*'()") == "-_.!~*'()"

    def test_space_and_plus(self):
        assert encode_uri_component("p w+d") == "p%20w%2Bd"

    def test_unicode(self):
        assert encode_uri_component("é") == "%C3%A9"


@pytest.mark.unit
class TestPortalClient:
    """Tests for PortalClient requests and error mapping."""

    async def test_fetch_login_page_uses_setup_url(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["method"] = request.method
            seen["ua"] = request.headers.get("user-agent")
            return httpx.Response(200, text="<html>login</html>")

        client = _client(handler)
        try:
            assert await client.fetch_login_page() == "<html>login</html>"
        finally:
            await client.close()

        assert seen["method"] == "GET"
        assert seen["url"] == f"{BASE}/prelogin/setup?_csrf=seed-123&flag=VTOP"
        assert seen["ua"] == "test-agent"

    async def test_submit_login_sends_query_and_empty_body(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, text="ok")

        client = _client(handler)
        try:
            await client.submit_login("tok", "21BCE0001", "p&ss word", "ABC123")
        finally:
            await client.close()

        request = seen["request"]
        assert request.method == "POST"
        assert request.url.path == "/vtop/login"
        raw_query = request.url.query.decode()
        assert raw_query == "_csrf=tok&username=21BCE0001&password=p%26ss%20word&captchaStr=ABC123"
        assert request.content == b""
        assert request.headers["content-type"] == "application/x-www-form-urlencoded"

    async def test_post_builds_path_and_params(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, text="<html>data</html>")

        client = _client(handler)
        try:
            body = await client.post("examinations/doStudentMarkView", {"semesterSubId": "VL2024"})
        finally:
            await client.close()

        assert body == "<html>data</html>"
        request = seen["request"]
        assert request.url.path == "/vtop/examinations/doStudentMarkView"
        assert request.url.params["semesterSubId"] == "VL2024"

    async def test_cookies_persist_across_requests(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.headers.get("cookie"))
            if len(calls) == 1:
                return httpx.Response(200, text="", headers={"set-cookie": "JSESSIONID=abc; Path=/"})
            return httpx.Response(200, text="")

        client = _client(handler)
        try:
            await client.fetch_login_page()
            await client.fetch_login_page()
        finally:
            await client.close()

        assert calls[0] is None
        assert "JSESSIONID=abc" in calls[1]

    async def test_http_error_status_raises_transport_error(self):
        client = _client(lambda request: httpx.Response(503, text="down"))
        try:
            with pytest.raises(TransportError, match="HTTP 503"):
                await client.fetch_login_page()
        finally:
            await client.close()

    async def test_timeout_raises_transport_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = _client(handler)
        try:
            with pytest.raises(TransportError, match="timed out"):
                await client.fetch_login_page()
        finally:
            await client.close()

    async def test_connect_error_does_not_leak_password(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        try:
            with pytest.raises(TransportError) as exc_info:
                await client.submit_login("tok", "user", "s3cret-pass", "ABC123")
        finally:
            await client.close()

        assert "s3cret-pass" not in str(exc_info.value)
        assert "ConnectError" in str(exc_info.value)

    async def test_close(self):
        client = _client(lambda request: httpx.Response(200))
        assert client.is_closed is False
        await client.close()
        assert client.is_closed is True
