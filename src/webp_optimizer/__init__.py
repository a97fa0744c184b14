"""Batch WebP conversion with target-size quality search."""

__version__ = "0.1.0"

from .config import AppConfig, load_config
from .core import ConversionError, OptimizationService
from .models import (
    BatchConversionResult,
    ContentType,
    ConversionResult,
    InvalidConfiguration,
    OptimizationTarget,
)
from .search import search_quality

__all__ = [
    "__version__",
    "AppConfig",
    "load_config",
    "BatchConversionResult",
    "ContentType",
    "ConversionError",
    "ConversionResult",
    "InvalidConfiguration",
    "OptimizationService",
    "OptimizationTarget",
    "search_quality",
]
