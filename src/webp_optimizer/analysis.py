"""Content classification and perceptual scoring built on Pillow.

Both are heuristics. The optimizer only needs a content-type tag to seed its
search and a normalized score for reporting, so the thresholds below favour
stable answers over fine distinctions.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from PIL import Image, ImageStat

from .models import ContentType

logger = logging.getLogger("webp_optimizer")

SAMPLE_EDGE = 256
FLAT_COLOR_RATIO = 0.05
ARTWORK_COLOR_RATIO = 0.25
TEXT_EXTREMES_RATIO = 0.9
TEXT_MAX_SATURATION = 0.1
ARTWORK_MIN_SATURATION = 0.35
VIVID_SATURATION = 0.5


class ClassificationError(RuntimeError):
    """Raised when an image cannot be analysed."""


class Classifier(Protocol):
    def classify(self, path: Path) -> ContentType:  # pragma: no cover - interface
        ...


class Scorer(Protocol):
    def score(self, original: Path, optimized: Path) -> float:  # pragma: no cover - interface
        ...


def _load_sample(path: Path) -> Image.Image:
    try:
        with Image.open(path) as image:
            sample = image.convert("RGB")
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ClassificationError(f"Unable to read {path.name}: {exc}") from exc
    sample.thumbnail((SAMPLE_EDGE, SAMPLE_EDGE))
    return sample


def classify_image(path: Path) -> ContentType:
    sample = _load_sample(path)
    pixels = sample.width * sample.height
    colors = sample.getcolors(maxcolors=pixels) or []
    distinct_ratio = len(colors) / pixels

    histogram = sample.convert("L").histogram()
    extremes_ratio = (sum(histogram[:64]) + sum(histogram[224:])) / pixels
    saturation = ImageStat.Stat(sample.convert("HSV")).mean[1] / 255

    if distinct_ratio < FLAT_COLOR_RATIO:
        if extremes_ratio > TEXT_EXTREMES_RATIO and saturation < TEXT_MAX_SATURATION:
            return ContentType.TEXT_DOCUMENT
        if saturation > ARTWORK_MIN_SATURATION:
            return ContentType.ARTWORK
        return ContentType.SCREENSHOT
    if saturation > VIVID_SATURATION and distinct_ratio < ARTWORK_COLOR_RATIO:
        return ContentType.ARTWORK
    return ContentType.PHOTO


class HeuristicClassifier:
    def classify(self, path: Path) -> ContentType:
        return classify_image(path)


class SafeClassifier:
    """Wraps any classifier so that a failure degrades to a default type."""

    def __init__(self, inner: Classifier, default: ContentType = ContentType.PHOTO) -> None:
        self._inner = inner
        self._default = default

    def classify(self, path: Path) -> ContentType:
        try:
            result = self._inner.classify(path)
        except Exception as exc:  # classification must never abort an image
            logger.warning("Classification failed for %s (%s); using %s", path.name, exc, self._default.value)
            return self._default
        if not isinstance(result, ContentType):
            logger.warning("Classifier returned %r for %s; using %s", result, path.name, self._default.value)
            return self._default
        return result


def _normalized_histogram(image: Image.Image) -> list[float]:
    total = image.width * image.height
    return [count / total for count in image.histogram()]


def histogram_similarity(original: Image.Image, optimized: Image.Image) -> float:
    """1.0 for identical RGB distributions, falling towards 0.0 as they diverge."""

    first = _normalized_histogram(original.convert("RGB"))
    second = _normalized_histogram(optimized.convert("RGB"))
    channel_diffs = [
        sum(abs(a - b) for a, b in zip(first[start:start + 256], second[start:start + 256]))
        for start in (0, 256, 512)
    ]
    similarity = 1.0 - sum(channel_diffs) / 3.0
    return max(0.0, min(1.0, similarity))


class HistogramScorer:
    def score(self, original: Path, optimized: Path) -> float:
        try:
            with Image.open(original) as first, Image.open(optimized) as second:
                return histogram_similarity(first, second)
        except Image.DecompressionBombError as exc:
            raise ValueError(f"Image too large to score: {exc}") from exc


__all__ = [
    "ClassificationError",
    "Classifier",
    "Scorer",
    "classify_image",
    "HeuristicClassifier",
    "SafeClassifier",
    "histogram_similarity",
    "HistogramScorer",
]
