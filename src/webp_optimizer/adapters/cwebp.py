from __future__ import annotations

import os
import shutil
from pathlib import Path

from .base import EncodeError, measure_output, run_tool

CWEBP_CANDIDATES = (
    "/usr/local/bin/cwebp",
    "/opt/homebrew/bin/cwebp",
    "/usr/bin/cwebp",
)


def find_cwebp(configured: str | None = None) -> str | None:
    """Locate a usable cwebp binary: configured path, well-known prefixes, then PATH."""

    if configured:
        return configured if os.access(configured, os.X_OK) else None
    for candidate in CWEBP_CANDIDATES:
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return shutil.which("cwebp")


class CWebPEncoder:
    def __init__(self, binary: str, *, timeout: float | None = 5.0) -> None:
        self._binary = binary
        self._timeout = timeout

    def encode(self, source: Path, quality: int, destination: Path) -> int:
        if not 0 <= quality <= 100:
            raise EncodeError(f"Quality out of range: {quality}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        run_tool(
            [self._binary, "-quiet", "-q", str(quality), str(source), "-o", str(destination)],
            timeout=self._timeout,
            error_cls=EncodeError,
        )
        return measure_output(destination)
