from __future__ import annotations

import logging

from .base import Encoder, EncodeError, ResizeError, Resizer, measure_output, run_tool
from .cwebp import CWebPEncoder, find_cwebp
from .pillow import PillowEncoder, PillowResizer
from .sips import SipsResizer, sips_available
from ..config import AppConfig

logger = logging.getLogger("webp_optimizer")


def get_encoder(config: AppConfig) -> Encoder:
    choice = config.tools.encoder.lower()
    if choice == "pillow":
        return PillowEncoder()
    binary = find_cwebp(config.tools.cwebp_path)
    if binary:
        return CWebPEncoder(binary, timeout=config.runtime.encode_timeout_s)
    if choice == "cwebp":
        raise EncodeError("cwebp not found. Install libwebp or set tools.cwebp_path")
    logger.debug("cwebp not found; encoding with Pillow")
    return PillowEncoder()


def get_resizer(config: AppConfig) -> Resizer:
    choice = config.tools.resizer.lower()
    if choice == "pillow":
        return PillowResizer()
    if sips_available(config.tools.sips_path):
        return SipsResizer(config.tools.sips_path, timeout=config.runtime.resize_timeout_s)
    if choice == "sips":
        raise ResizeError(f"sips not available at {config.tools.sips_path}")
    return PillowResizer()


__all__ = [
    "Encoder",
    "EncodeError",
    "Resizer",
    "ResizeError",
    "CWebPEncoder",
    "PillowEncoder",
    "PillowResizer",
    "SipsResizer",
    "find_cwebp",
    "sips_available",
    "measure_output",
    "run_tool",
    "get_encoder",
    "get_resizer",
]
