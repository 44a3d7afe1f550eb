"""
Shared fixtures for vtopgate tests.

Strategy:
- Synthetic captcha model: each template symbol is a distinct 4x4 ink block,
  each linear class a random 22x24 pattern with +1/-1 weights, so rendered
  captchas classify exactly
- Rendered captcha images in both source geometries (179x44 and 200x40)
- Login setup / landing page HTML builders
- Override settings with test-safe defaults
"""

from __future__ import annotations

import os

# Set env vars BEFORE any vtopgate module is imported.
os.environ.setdefault("VTOPGATE_CAPTCHA_RETRY_DELAY_SECONDS", "0")
os.environ.setdefault("VTOPGATE_SESSION_TIMEOUT_SECONDS", "300")

import base64
from io import BytesIO
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest
from PIL import Image

from vtopgate.captcha_solver import (
    LINEAR_ALPHABET,
    TEMPLATE_ALPHABET,
    TEMPLATE_SHAPE,
    parse_captcha_model,
)
from vtopgate.imaging import CELL_SHAPE, INK, LINEAR_GRID_SHAPE, PAPER, TEMPLATE_GRID_SHAPE, cell_bounds


# ── Synthetic captcha model ────────────────────────────────


def _template_block_origin(index: int) -> tuple[int, int]:
    return 4 * (index // 7), 4 * (index % 7)


def _make_templates() -> dict[str, list[list[int]]]:
    templates = {}
    for index, symbol in enumerate(TEMPLATE_ALPHABET):
        mask = np.full(TEMPLATE_SHAPE, PAPER, dtype=np.int16)
        r0, c0 = _template_block_origin(index)
        mask[r0:r0 + 4, c0:c0 + 4] = INK
        templates[symbol] = mask.tolist()
    return templates


def _make_linear_patterns() -> np.ndarray:
    rng = np.random.default_rng(7)
    return rng.integers(0, 2, size=(len(LINEAR_ALPHABET), *CELL_SHAPE), dtype=np.uint8)


LINEAR_PATTERNS = _make_linear_patterns()


@pytest.fixture
def captcha_model_raw():
    """Model JSON (as parsed) carrying both templates and linear weights."""
    weights = np.stack([2.0 * p.reshape(-1) - 1.0 for p in LINEAR_PATTERNS], axis=1)
    raw = _make_templates()
    raw["weights"] = weights.tolist()
    raw["biases"] = [0.0] * len(LINEAR_ALPHABET)
    return raw


@pytest.fixture
def captcha_model(captcha_model_raw):
    return parse_captcha_model(captcha_model_raw)


# ── Rendered captcha images ────────────────────────────────


def _png_bytes(img: Image.Image) -> bytes:
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def render_template_captcha():
    """Return fn(text) -> 179x44 grayscale PNG bytes the template matcher reads as `text`."""

    def _render(text: str) -> bytes:
        grid = np.full(TEMPLATE_GRID_SHAPE, PAPER, dtype=np.uint8)
        for band, symbol in enumerate(text):
            r0, c0 = _template_block_origin(TEMPLATE_ALPHABET.index(symbol))
            top, left = 12 + r0, band * 30 + c0
            grid[top:top + 4, left:left + 4] = INK
        return _png_bytes(Image.fromarray(grid))

    return _render


@pytest.fixture
def render_linear_captcha():
    """Return fn(text) -> 200x40 RGB PNG bytes the linear classifier reads as `text`."""

    def _render(text: str) -> bytes:
        rows, cols = LINEAR_GRID_SHAPE
        rgb = np.full((rows, cols, 3), 255, dtype=np.uint8)
        for index, symbol in enumerate(text):
            pattern = LINEAR_PATTERNS[LINEAR_ALPHABET.index(symbol)]
            r0, r1, c0, c1 = cell_bounds(index)
            cell = rgb[r0:r1, c0:c1]
            cell[pattern == 1] = (255, 0, 0)
        return _png_bytes(Image.fromarray(rgb))

    return _render


@pytest.fixture
def data_uri():
    """Return fn(png_bytes) -> data:image/png;base64,... URI."""

    def _encode(image_bytes: bytes) -> str:
        return "data:image/png;base64," + base64.b64encode(image_bytes).decode("ascii")

    return _encode


# ── Portal pages ───────────────────────────────────────────


@pytest.fixture
def login_page():
    """Return fn(image_src, csrf) -> prelogin setup HTML with the image captcha."""

    def _page(image_src: str, csrf: str = "csrf-login-1") -> str:
        return (
            "<html><body><form id='vtopLoginForm'>"
            f'<input type="hidden" name="_csrf" value="{csrf}"/>'
            '<div id="captchaBlock">'
            f'<img class="form-control img-fluid" alt="vtopCaptcha" src="{image_src}"/>'
            "</div></form></body></html>"
        )

    return _page


@pytest.fixture
def landing_page():
    """Return fn(student_id, csrf) -> post-login landing HTML."""

    def _page(student_id: str = "21BCE0001", csrf: str = "csrf-session-1") -> str:
        return (
            "<html><head><script>"
            f'var id = "{student_id}";'
            "</script></head><body>"
            f'<form><input type="hidden" name="_csrf" value="{csrf}"/></form>'
            "</body></html>"
        )

    return _page


# ── Portal client mock ─────────────────────────────────────


@pytest.fixture
def mock_portal_client():
    """AsyncMock standing in for PortalClient; scripts set the side effects."""
    client = MagicMock()
    client.fetch_login_page = AsyncMock()
    client.submit_login = AsyncMock()
    client.post = AsyncMock(return_value="<html></html>")
    client.close = AsyncMock()
    return client
