"""
Local captcha solver for the VTOP login captcha.

Two recognisers, each bound to its own decoding pipeline and alphabet:
  - TemplateMatcher: correlates six 32x30 bands of the cleaned 44x179 grid
    against one ink bitmap per symbol.
  - LinearClassifier: projects each binarized 22x24 cell through a trained
    weight matrix + bias, softmax, arg-max.

Both always return exactly six characters. There is no confidence cut-off;
the portal is the only judge of a guess.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping

import numpy as np

from vtopgate.config import settings
from vtopgate.errors import CaptchaModelError, DecodeError
from vtopgate.imaging import (
    CELL_COUNT,
    CELL_SHAPE,
    INK,
    LINEAR_GRID_SHAPE,
    PAPER,
    TEMPLATE_GRID_SHAPE,
    decode_linear_cells,
    decode_template_grid,
    read_image_size,
)

logger = logging.getLogger(__name__)

CAPTCHA_LENGTH = 6

# The two alphabets differ in membership and order. Never unify them.
TEMPLATE_ALPHABET = "123456789ABCDEFGHIJKLMNPQRSTUVWXYZ"
LINEAR_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

TEMPLATE_SHAPE = (32, 30)
_BAND_TOP = 12
_BAND_WIDTH = 30

PIPELINES = ("auto", "linear", "template")


# ---------------------------------------------------------------------------
# Classifiers
# ---------------------------------------------------------------------------

class CaptchaClassifier(ABC):
    """A decoding pipeline plus the recogniser that consumes its output."""

    name: str = ""
    alphabet: str = ""
    grid_shape: tuple[int, int] = (0, 0)

    @property
    def image_size(self) -> tuple[int, int]:
        """(width, height) of the source image this pipeline accepts."""
        rows, cols = self.grid_shape
        return cols, rows

    @abstractmethod
    def decode(self, image_bytes: bytes):
        """Turn encoded image bytes into this recogniser's input."""

    @abstractmethod
    def classify(self, decoded) -> str:
        """Return the six-character guess for decoded input."""

    def solve(self, image_bytes: bytes) -> str:
        return self.classify(self.decode(image_bytes))


class TemplateMatcher(CaptchaClassifier):
    name = "template"
    alphabet = TEMPLATE_ALPHABET
    grid_shape = TEMPLATE_GRID_SHAPE

    def __init__(self, templates: Mapping[str, np.ndarray]):
        missing = [ch for ch in self.alphabet if ch not in templates]
        if missing:
            raise CaptchaModelError(f"Missing templates for {''.join(missing)!r}")
        masks = []
        for ch in self.alphabet:
            mask = np.asarray(templates[ch])
            if mask.shape != TEMPLATE_SHAPE:
                raise CaptchaModelError(
                    f"Template {ch!r} has shape {mask.shape}, expected {TEMPLATE_SHAPE}"
                )
            masks.append(mask == INK)
        self._ink_masks = np.stack(masks)
        self._ink_counts = self._ink_masks.sum(axis=(1, 2))

    def decode(self, image_bytes: bytes) -> np.ndarray:
        return decode_template_grid(image_bytes)

    @staticmethod
    def band_region(grid: np.ndarray, band: int) -> np.ndarray:
        """
        The 32x30 window compared against templates for band 0..5.

        The last band reaches one column past a 179-wide grid; that column
        reads as paper.
        """
        left = band * _BAND_WIDTH
        src = grid[_BAND_TOP:_BAND_TOP + TEMPLATE_SHAPE[0], left:left + _BAND_WIDTH]
        region = np.full(TEMPLATE_SHAPE, PAPER, dtype=grid.dtype)
        region[: src.shape[0], : src.shape[1]] = src
        return region

    def score_band(self, grid: np.ndarray, band: int) -> np.ndarray:
        """Fraction of each template's ink found as ink in the band."""
        ink = self.band_region(grid, band) == INK
        hits = (self._ink_masks & ink).sum(axis=(1, 2))
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(
                self._ink_counts > 0, hits / np.maximum(self._ink_counts, 1), 0.0
            )

    def classify(self, grid: np.ndarray) -> str:
        if grid.shape != self.grid_shape:
            raise DecodeError(f"Template grid has shape {grid.shape}, expected {self.grid_shape}")
        # np.argmax keeps the first symbol on ties.
        return "".join(
            self.alphabet[int(np.argmax(self.score_band(grid, band)))]
            for band in range(CAPTCHA_LENGTH)
        )


class LinearClassifier(CaptchaClassifier):
    name = "linear"
    alphabet = LINEAR_ALPHABET
    grid_shape = LINEAR_GRID_SHAPE

    def __init__(self, weights, biases):
        self._weights = np.asarray(weights, dtype=np.float64)
        self._biases = np.asarray(biases, dtype=np.float64)
        features = CELL_SHAPE[0] * CELL_SHAPE[1]
        classes = len(self.alphabet)
        if self._weights.shape != (features, classes):
            raise CaptchaModelError(
                f"Weights have shape {self._weights.shape}, expected {(features, classes)}"
            )
        if self._biases.shape != (classes,):
            raise CaptchaModelError(
                f"Biases have shape {self._biases.shape}, expected {(classes,)}"
            )

    def decode(self, image_bytes: bytes) -> list[np.ndarray]:
        return decode_linear_cells(image_bytes)

    def probabilities(self, cell: np.ndarray) -> np.ndarray:
        logits = cell.reshape(-1).astype(np.float64) @ self._weights + self._biases
        exp = np.exp(logits - logits.max())
        return exp / exp.sum()

    def classify(self, cells: list[np.ndarray]) -> str:
        if len(cells) != CELL_COUNT:
            raise DecodeError(f"Expected {CELL_COUNT} cells, got {len(cells)}")
        return "".join(
            self.alphabet[int(np.argmax(self.probabilities(cell)))] for cell in cells
        )


# ---------------------------------------------------------------------------
# Model loading
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CaptchaModel:
    """Immutable recogniser data. Either half may be absent."""
    templates: dict[str, np.ndarray] | None = None
    weights: np.ndarray | None = None
    biases: np.ndarray | None = None


def _frozen(values, dtype) -> np.ndarray:
    arr = np.array(values, dtype=dtype)
    arr.setflags(write=False)
    return arr


def parse_captcha_model(raw: dict) -> CaptchaModel:
    """
    Build a CaptchaModel from the bitmap JSON layout: one key per template
    symbol (32x30 of 0/255), plus `weights` and `biases`.
    """
    present = [ch for ch in TEMPLATE_ALPHABET if ch in raw]
    templates = None
    if present:
        if len(present) != len(TEMPLATE_ALPHABET):
            missing = "".join(ch for ch in TEMPLATE_ALPHABET if ch not in raw)
            raise CaptchaModelError(f"Captcha model is missing templates for {missing!r}")
        templates = {ch: _frozen(raw[ch], np.int16) for ch in TEMPLATE_ALPHABET}

    weights = biases = None
    if ("weights" in raw) != ("biases" in raw):
        raise CaptchaModelError("Captcha model needs both 'weights' and 'biases'")
    if "weights" in raw:
        weights = _frozen(raw["weights"], np.float64)
        biases = _frozen(raw["biases"], np.float64)

    if templates is None and weights is None:
        raise CaptchaModelError("Captcha model has neither templates nor weights")
    return CaptchaModel(templates=templates, weights=weights, biases=biases)


def load_captcha_model(path: str) -> CaptchaModel:
    """Read the captcha model JSON file from disk."""
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CaptchaModelError(f"Cannot load captcha model from {path}: {e}") from e
    if not isinstance(raw, dict):
        raise CaptchaModelError(f"Captcha model in {path} is not a JSON object")
    try:
        return parse_captcha_model(raw)
    except (ValueError, TypeError) as e:
        raise CaptchaModelError(f"Malformed captcha model in {path}: {e}") from e


# ---------------------------------------------------------------------------
# Solver
# ---------------------------------------------------------------------------

class CaptchaSolver:
    """Pick the pipeline for an image and return its six-character guess."""

    def __init__(self, model: CaptchaModel, pipeline: str = "auto"):
        if pipeline not in PIPELINES:
            raise ValueError(f"Unknown captcha pipeline {pipeline!r}; use one of {PIPELINES}")
        self._pipeline = pipeline
        self._classifiers: dict[str, CaptchaClassifier] = {}
        if model.weights is not None:
            self._classifiers["linear"] = LinearClassifier(model.weights, model.biases)
        if model.templates is not None:
            self._classifiers["template"] = TemplateMatcher(model.templates)
        if pipeline != "auto" and pipeline not in self._classifiers:
            raise CaptchaModelError(f"Captcha model has no data for the {pipeline!r} pipeline")

    @property
    def pipelines(self) -> list[str]:
        return list(self._classifiers)

    def select(self, image_bytes: bytes) -> CaptchaClassifier:
        if self._pipeline != "auto":
            return self._classifiers[self._pipeline]
        size = read_image_size(image_bytes)
        for classifier in self._classifiers.values():
            if classifier.image_size == size:
                return classifier
        raise DecodeError(f"No captcha pipeline accepts a {size[0]}x{size[1]} image")

    def solve_sync(self, image_bytes: bytes) -> str:
        classifier = self.select(image_bytes)
        guess = classifier.solve(image_bytes)
        logger.debug("Captcha solved with %s pipeline: %r", classifier.name, guess)
        return guess

    async def solve(self, image_bytes: bytes) -> str:
        """Classify off the event loop; raises DecodeError on bad images."""
        return await asyncio.to_thread(self.solve_sync, image_bytes)


_solver_instance: CaptchaSolver | None = None


def get_captcha_solver() -> CaptchaSolver:
    """Return the cached captcha solver, loading the model on first use."""
    global _solver_instance

    if _solver_instance is not None:
        return _solver_instance

    if not settings.captcha_model_path:
        raise ValueError("VTOPGATE_CAPTCHA_MODEL_PATH must be set for captcha solving")

    logger.info(
        "Loading captcha model from %s (pipeline=%s)",
        settings.captcha_model_path, settings.captcha_pipeline,
    )
    model = load_captcha_model(settings.captcha_model_path)
    _solver_instance = CaptchaSolver(model, pipeline=settings.captcha_pipeline)
    return _solver_instance


def reset_solver() -> None:
    """Reset the cached solver instance (for testing)."""
    global _solver_instance
    _solver_instance = None
