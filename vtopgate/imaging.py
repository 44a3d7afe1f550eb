"""
Captcha image decoding.

Two pipelines, one per classifier. Each accepts exactly one source geometry
and raises DecodeError for anything else. Images are never cropped or resized.

  template: 179x44 grayscale -> noise-cleaned 44x179 grid (0 = ink, 255 = paper)
  linear:   200x40 RGB -> 40x200 saturation grid -> six binarized 22x24 cells
"""

from __future__ import annotations

import base64
import binascii
import logging
from io import BytesIO

import numpy as np
from PIL import Image, UnidentifiedImageError

from vtopgate.errors import DecodeError

logger = logging.getLogger(__name__)

# (rows, columns)
TEMPLATE_GRID_SHAPE = (44, 179)
LINEAR_GRID_SHAPE = (40, 200)

INK = 0
PAPER = 255

# Linear pipeline cell geometry. Empirical calibration, do not re-derive.
CELL_COUNT = 6
CELL_PITCH = 25
CELL_SHAPE = (22, 24)


# ---------------------------------------------------------------------------
# Source decoding
# ---------------------------------------------------------------------------

def decode_data_uri(src: str) -> bytes:
    """Return the raw image bytes of a `data:image/...;base64,` URI."""
    payload = src.split(",", 1)[1] if "," in src else src
    payload = payload.strip()
    if not payload:
        raise DecodeError("Empty captcha image payload")
    try:
        return base64.b64decode(payload)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Malformed base64 captcha image: {e}") from e


def _open_image(image_bytes: bytes) -> Image.Image:
    if not image_bytes:
        raise DecodeError("Captcha image is empty")
    try:
        img = Image.open(BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise DecodeError(f"Unreadable captcha image: {e}") from e
    return img


def read_image_size(image_bytes: bytes) -> tuple[int, int]:
    """Return (width, height) of an encoded image."""
    return _open_image(image_bytes).size


def _require_shape(img: Image.Image, shape: tuple[int, int]) -> None:
    rows, cols = shape
    if img.size != (cols, rows):
        raise DecodeError(
            f"Captcha image is {img.width}x{img.height}, expected {cols}x{rows}"
        )


# ---------------------------------------------------------------------------
# Template pipeline
# ---------------------------------------------------------------------------

def clean_noise(grid: np.ndarray) -> np.ndarray:
    """
    Flatten speckle noise to paper.

    A pixel is flattened when it is ink sitting between two paper neighbours
    (horizontally or vertically), or when it is neither ink nor paper. The
    scan mutates in place, row by row, so a pixel flattened early feeds the
    neighbour tests of the pixels after it. The first row and column are
    never tested; neighbours past the far edges never count as paper.
    """
    rows, cols = grid.shape
    px = grid.tolist()

    def at(x: int, y: int) -> int | None:
        if x < rows and y < cols:
            return px[x][y]
        return None

    for x in range(1, rows):
        for y in range(1, cols):
            value = px[x][y]
            if value != INK and value != PAPER:
                px[x][y] = PAPER
            elif value == INK and (
                (px[x][y - 1] == PAPER and at(x, y + 1) == PAPER)
                or (px[x - 1][y] == PAPER and at(x + 1, y) == PAPER)
            ):
                px[x][y] = PAPER

    return np.array(px, dtype=np.int16)


def decode_template_grid(image_bytes: bytes) -> np.ndarray:
    """Decode a 179x44 captcha into a cleaned 44x179 ink/paper grid."""
    img = _open_image(image_bytes)
    _require_shape(img, TEMPLATE_GRID_SHAPE)
    grid = np.asarray(img.convert("L"), dtype=np.int16)
    return clean_noise(grid)


# ---------------------------------------------------------------------------
# Linear pipeline
# ---------------------------------------------------------------------------

def saturation_grid(rgb: np.ndarray) -> np.ndarray:
    """
    Per-pixel saturation (max-min)/max scaled to 0-255, rounded half up.

    A pure black pixel (max 0) has no defined saturation and comes back as
    NaN; binarize() blanks any cell that contains one.
    """
    rgb = rgb.astype(np.int32)
    hi = rgb.max(axis=2)
    lo = rgb.min(axis=2)
    with np.errstate(divide="ignore", invalid="ignore"):
        sat = (hi - lo) * 255.0 / hi
    return np.where(hi > 0, np.floor(sat + 0.5), np.nan)


def cell_bounds(index: int) -> tuple[int, int, int, int]:
    """(row_start, row_end, col_start, col_end) of character cell `index`."""
    col_start = (index + 1) * CELL_PITCH + 2
    col_end = (index + 2) * CELL_PITCH + 1
    row_start = 7 + 5 * (index % 2) + 1
    row_end = 35 - 5 * ((index + 1) % 2)
    return row_start, row_end, col_start, col_end


def slice_cells(grid: np.ndarray) -> list[np.ndarray]:
    cells = []
    for i in range(CELL_COUNT):
        r0, r1, c0, c1 = cell_bounds(i)
        cells.append(grid[r0:r1, c0:c1])
    return cells


def binarize(cell: np.ndarray) -> np.ndarray:
    """
    1 where the value is strictly above the cell's own mean, else 0.

    A cell holding an undefined (NaN) pixel has an undefined mean, so no
    pixel compares above it and the whole cell is 0.
    """
    if np.isnan(cell).any():
        return np.zeros(cell.shape, dtype=np.uint8)
    return (cell > cell.mean()).astype(np.uint8)


def decode_linear_cells(image_bytes: bytes) -> list[np.ndarray]:
    """Decode a 200x40 captcha into six binarized 22x24 character cells."""
    img = _open_image(image_bytes)
    _require_shape(img, LINEAR_GRID_SHAPE)
    rgb = np.asarray(img.convert("RGB"))
    grid = saturation_grid(rgb)
    return [binarize(cell) for cell in slice_cells(grid)]
