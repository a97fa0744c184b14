from __future__ import annotations

import os
from pathlib import Path

from .base import ResizeError, run_tool


def sips_available(binary: str) -> bool:
    return os.path.isfile(binary) and os.access(binary, os.X_OK)


class SipsResizer:
    """Resample to a fixed width with macOS ``sips``; it cannot write WebP, so the copy is JPEG."""

    working_suffix = ".jpg"

    def __init__(self, binary: str = "/usr/bin/sips", *, timeout: float | None = 30.0) -> None:
        self._binary = binary
        self._timeout = timeout

    def resize(self, source: Path, width: int, destination: Path) -> Path:
        if not source.exists():
            raise ResizeError(f"Source image does not exist: {source}")
        run_tool(
            [self._binary, "--resampleWidth", str(width), str(source), "--out", str(destination)],
            timeout=self._timeout,
            error_cls=ResizeError,
        )
        if not destination.exists():
            raise ResizeError(f"sips did not write {destination}")
        return destination
