"""Domain models for WebP target-size optimization."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .logging import BatchSummary

KB = 1024
UNKNOWN_SIZE = float("inf")


class InvalidConfiguration(ValueError):
    """Raised before a batch starts when its parameters cannot work."""


class ContentType(str, Enum):
    PHOTO = "Photo"
    SCREENSHOT = "Screenshot"
    ARTWORK = "Artwork"
    TEXT_DOCUMENT = "Text Document"


BASE_QUALITY: dict[ContentType, int] = {
    ContentType.SCREENSHOT: 90,
    ContentType.TEXT_DOCUMENT: 90,
    ContentType.ARTWORK: 85,
}
DEFAULT_BASE_QUALITY = 80


def base_quality_for(content_type: ContentType) -> int:
    return BASE_QUALITY.get(content_type, DEFAULT_BASE_QUALITY)


@dataclass(frozen=True, slots=True)
class OptimizationTarget:
    target_size_bytes: float
    preset_name: str = "custom"

    def __post_init__(self) -> None:
        if not self.target_size_bytes > 0:
            raise InvalidConfiguration(
                f"Target size must be positive, got {self.target_size_bytes!r}"
            )

    @classmethod
    def preset(cls, name: str) -> OptimizationTarget:
        key = name.strip().lower()
        try:
            size_kb, _ = PRESETS[key]
        except KeyError as exc:
            known = ", ".join(sorted(PRESETS))
            raise InvalidConfiguration(f"Unknown preset {name!r}; expected one of {known}") from exc
        return cls(target_size_bytes=size_kb * KB, preset_name=key)

    @classmethod
    def custom_kb(cls, size_kb: float) -> OptimizationTarget:
        return cls(target_size_bytes=size_kb * KB, preset_name="custom")

    @property
    def label(self) -> str:
        if self.preset_name in PRESETS:
            return PRESETS[self.preset_name][1]
        return "Custom"


# name -> (target KB, display label)
PRESETS: dict[str, tuple[int, str]] = {
    "maximum": (1000, "Maximum Quality"),
    "balanced": (500, "Balanced"),
    "aggressive": (200, "Aggressive Compression"),
}


@dataclass(frozen=True, slots=True)
class UsageProfile:
    name: str
    width: int
    target: OptimizationTarget


PROFILES: dict[str, UsageProfile] = {
    "web-standard": UsageProfile("web-standard", 1200, OptimizationTarget.preset("balanced")),
    "social-media": UsageProfile("social-media", 1080, OptimizationTarget.preset("aggressive")),
    "high-quality": UsageProfile("high-quality", 1920, OptimizationTarget.preset("maximum")),
    "email-friendly": UsageProfile("email-friendly", 800, OptimizationTarget.custom_kb(100)),
}


@dataclass(slots=True)
class SearchState:
    """Mutable window of one quality search."""

    min_quality: int
    max_quality: int
    best_quality: int
    best_size_bytes: float = UNKNOWN_SIZE
    attempts_used: int = 0

    @property
    def width(self) -> int:
        return self.max_quality - self.min_quality


@dataclass(frozen=True, slots=True)
class SearchTrial:
    quality: int
    size_bytes: int | None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.size_bytes is not None


@dataclass(frozen=True, slots=True)
class SearchOutcome:
    quality: int
    size_bytes: float
    trials: tuple[SearchTrial, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def size_known(self) -> bool:
        return self.size_bytes != UNKNOWN_SIZE


@dataclass(frozen=True, slots=True)
class ConversionResult:
    """Outcome of one image's pipeline. Never mutated after creation."""

    source_path: Path
    output_path: Path
    chosen_quality: int
    original_size_bytes: int
    output_size_bytes: int
    content_type: ContentType
    quality_score: float
    base_quality: int = DEFAULT_BASE_QUALITY
    search_size_bytes: float = UNKNOWN_SIZE
    trials: int = 0
    warnings: tuple[str, ...] = ()
    run_id: str = ""

    @property
    def bytes_saved(self) -> int:
        return self.original_size_bytes - self.output_size_bytes

    @property
    def reduction_percent(self) -> int:
        if self.original_size_bytes <= 0:
            return 0
        return int(self.bytes_saved / self.original_size_bytes * 100)


@dataclass(slots=True)
class BatchConversionResult:
    """Aggregate results for a batch optimization request."""

    results: list[ConversionResult] = field(default_factory=list)
    summary: BatchSummary = field(default_factory=BatchSummary)


__all__ = [
    "KB",
    "UNKNOWN_SIZE",
    "InvalidConfiguration",
    "ContentType",
    "BASE_QUALITY",
    "DEFAULT_BASE_QUALITY",
    "base_quality_for",
    "OptimizationTarget",
    "PRESETS",
    "UsageProfile",
    "PROFILES",
    "SearchState",
    "SearchTrial",
    "SearchOutcome",
    "ConversionResult",
    "BatchConversionResult",
]
