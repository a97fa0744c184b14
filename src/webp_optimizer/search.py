"""Bounded binary search for the encoder quality that best matches a target size."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .adapters import Encoder, EncodeError
from .config import SearchConfig
from .models import InvalidConfiguration, SearchOutcome, SearchState, SearchTrial
from .utils import TRIAL_PREFIX, default_work_dir, unique_temp_path

logger = logging.getLogger("webp_optimizer")

MIN_QUALITY = 0
MAX_QUALITY = 100

SIZE_UNKNOWN = "SIZE_UNKNOWN"
TARGET_UNREACHABLE = "TARGET_UNREACHABLE"

SearchObserver = Callable[[SearchState], None]


@dataclass(frozen=True, slots=True)
class SearchParameters:
    max_attempts: int = 8
    tolerance: int = 5
    lower_span: int = 20
    upper_span: int = 10

    @classmethod
    def from_config(cls, config: SearchConfig) -> SearchParameters:
        return cls(
            max_attempts=config.max_attempts,
            tolerance=config.tolerance,
            lower_span=config.lower_span,
            upper_span=config.upper_span,
        )


def clamp_quality(value: int) -> int:
    return max(MIN_QUALITY, min(MAX_QUALITY, int(value)))


def initial_window(base_quality: int, lower_span: int = 20, upper_span: int = 10) -> tuple[int, int]:
    """Clamped search window around the seed, wider on the low side."""

    base = clamp_quality(base_quality)
    return max(MIN_QUALITY, base - lower_span), min(MAX_QUALITY, base + upper_span)


def _run_trial(encoder: Encoder, source: Path, quality: int, work_dir: Path) -> SearchTrial:
    trial_path = unique_temp_path(work_dir, TRIAL_PREFIX, ".webp")
    try:
        size = encoder.encode(source, quality, trial_path)
    except EncodeError as exc:
        logger.debug("Trial at q=%d failed for %s: %s", quality, source.name, exc)
        return SearchTrial(quality=quality, size_bytes=None, error=str(exc))
    finally:
        trial_path.unlink(missing_ok=True)
    return SearchTrial(quality=quality, size_bytes=size)


def search_quality(
    source: Path,
    target_size_bytes: float,
    base_quality: int,
    encoder: Encoder,
    output_path: Path,
    *,
    work_dir: Path | None = None,
    parameters: SearchParameters | None = None,
    observer: SearchObserver | None = None,
) -> SearchOutcome:
    """Find the quality whose encoded size is closest to *target_size_bytes*.

    Each trial encodes to a disposable file that is removed whatever the
    outcome. Failed trials still consume the attempt budget and leave the
    window where it was. Once the window is narrower than the tolerance, or the
    budget is spent, the winning quality is encoded once more into
    *output_path*.

    Returns the chosen quality and the trial size that won it. The size is
    ``inf`` when no trial produced a readable file; the quality is then the
    seed. An :class:`EncodeError` from the final encode is not caught.
    """

    if not target_size_bytes > 0:
        raise InvalidConfiguration(f"Target size must be positive, got {target_size_bytes!r}")
    params = parameters or SearchParameters()
    if params.max_attempts < 0 or params.tolerance < 0:
        raise InvalidConfiguration("Search budget and tolerance must be non-negative")
    directory = work_dir or default_work_dir()

    base = clamp_quality(base_quality)
    low, high = initial_window(base, params.lower_span, params.upper_span)
    state = SearchState(min_quality=low, max_quality=high, best_quality=base)
    trials: list[SearchTrial] = []

    while state.width > params.tolerance and state.attempts_used < params.max_attempts:
        state.attempts_used += 1
        quality = (state.min_quality + state.max_quality) // 2
        trial = _run_trial(encoder, source, quality, directory)
        trials.append(trial)
        if trial.size_bytes is not None:
            size = trial.size_bytes
            if abs(size - target_size_bytes) < abs(state.best_size_bytes - target_size_bytes):
                state.best_quality = quality
                state.best_size_bytes = size
            if size > target_size_bytes:
                state.max_quality = quality - 1
            else:
                state.min_quality = quality + 1
        if observer is not None:
            observer(state)

    encoder.encode(source, state.best_quality, output_path)

    warnings: list[str] = []
    succeeded = [trial.size_bytes for trial in trials if trial.size_bytes is not None]
    if not succeeded:
        warnings.append(SIZE_UNKNOWN)
        logger.warning(
            "No trial encode succeeded for %s; fell back to quality %d", source.name, base
        )
    elif all(size <= target_size_bytes for size in succeeded):
        warnings.append(TARGET_UNREACHABLE)
        logger.info(
            "Target %.0f B is above what %s reaches at q<=%d",
            target_size_bytes,
            source.name,
            high,
        )

    return SearchOutcome(
        quality=state.best_quality,
        size_bytes=state.best_size_bytes,
        trials=tuple(trials),
        warnings=tuple(warnings),
    )


__all__ = [
    "MIN_QUALITY",
    "MAX_QUALITY",
    "SIZE_UNKNOWN",
    "TARGET_UNREACHABLE",
    "SearchParameters",
    "SearchObserver",
    "clamp_quality",
    "initial_window",
    "search_quality",
]
