"""
HTTP surface.

Flask handles requests on worker threads; every coroutine is handed to one
background event loop (LoopRunner) so sessions, their locks and their httpx
clients all stay bound to a single loop for the life of the process.

  POST /initialdata   {username, password}
  POST /semesterdata  {username, password, semesterId}
  GET  /health

Every route is rate limited per client IP (settings.rate_limit) and carries
the usual hardening headers (CSP, nosniff, frame options, referrer policy).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Coroutine

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_talisman import Talisman

from vtopgate.config import settings
from vtopgate.errors import CredentialError, Exhausted, PortalError, TokenExtractionError
from vtopgate.login import EXHAUSTED_MESSAGE, INVALID_CREDENTIALS_MESSAGE

logger = logging.getLogger(__name__)

RATE_LIMITED_MESSAGE = "Too many requests, please try again later."


class LoopRunner:
    """An asyncio event loop running forever on a daemon thread."""

    def __init__(self):
        self._loop = asyncio.new_event_loop()
        self._thread: threading.Thread | None = None

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._thread = threading.Thread(
            target=self._loop.run_forever, name="vtopgate-loop", daemon=True,
        )
        self._thread.start()

    def run(self, coro: Coroutine[Any, Any, Any], timeout: float | None = None) -> Any:
        """Run `coro` on the background loop and block for its result."""
        if not self.is_running:
            coro.close()
            raise RuntimeError("Event loop thread is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(timeout)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join()
        self._thread = None
        self._loop.close()


def _failure(message: str, status: int, **extra):
    return jsonify({"success": False, "message": message, **extra}), status


def create_app(service, runner: LoopRunner) -> Flask:
    """Build the Flask app serving `service` through `runner`."""
    app = Flask(__name__)
    CORS(app, origins=settings.cors_origins)

    if settings.security_headers_enabled:
        # TLS terminates in front of the app.
        Talisman(
            app,
            force_https=False,
            content_security_policy={"default-src": "'self'"},
            frame_options="SAMEORIGIN",
            referrer_policy="no-referrer",
        )

    Limiter(
        get_remote_address,
        app=app,
        default_limits=[settings.rate_limit],
        storage_uri=settings.rate_limit_storage_uri,
        enabled=settings.rate_limit_enabled,
    )

    @app.errorhandler(429)
    def rate_limited(e):
        logger.warning("Rate limit exceeded for %s", get_remote_address())
        return _failure(RATE_LIMITED_MESSAGE, 429)

    def _respond(endpoint: str, coro: Coroutine[Any, Any, dict]):
        try:
            payload = runner.run(coro)
        except CredentialError:
            return _failure(INVALID_CREDENTIALS_MESSAGE, 401)
        except Exhausted:
            return _failure(EXHAUSTED_MESSAGE, 401)
        except TokenExtractionError:
            return _failure("Failed to extract required tokens", 500)
        except Exception as e:
            logger.error("Error in %s endpoint", endpoint, exc_info=True)
            error = str(e) if isinstance(e, PortalError) else type(e).__name__
            return _failure("Internal server error", 500, error=error)
        return jsonify(payload)

    @app.route("/initialdata", methods=["POST"])
    def initial_data():
        body = request.get_json(silent=True) or {}
        username = body.get("username")
        password = body.get("password")
        if not username or not password:
            return _failure("Username and password are required", 400)
        return _respond("/initialdata", service.fetch_initial_data(username, password))

    @app.route("/semesterdata", methods=["POST"])
    def semester_data():
        body = request.get_json(silent=True) or {}
        username = body.get("username")
        password = body.get("password")
        semester_id = body.get("semesterId")
        if not username or not password or not semester_id:
            return _failure("Username, password, and semesterId are required", 400)
        return _respond(
            "/semesterdata", service.fetch_semester_data(username, password, semester_id),
        )

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify(service.health())

    return app
