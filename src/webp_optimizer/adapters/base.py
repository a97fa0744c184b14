from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Protocol, Sequence


class EncodeError(RuntimeError):
    """Raised when an encode fails or leaves no readable output."""


class ResizeError(RuntimeError):
    """Raised when the working copy of a source image cannot be produced."""


class Encoder(Protocol):
    def encode(self, source: Path, quality: int, destination: Path) -> int:  # pragma: no cover - interface
        ...


class Resizer(Protocol):
    def resize(self, source: Path, width: int, destination: Path) -> Path:  # pragma: no cover - interface
        ...


def measure_output(destination: Path) -> int:
    try:
        size = destination.stat().st_size
    except OSError as exc:
        raise EncodeError(f"Encoder produced no output at {destination}") from exc
    if size <= 0:
        raise EncodeError(f"Encoder produced an empty file at {destination}")
    return size


def run_tool(
    command: Sequence[str],
    *,
    timeout: float | None,
    error_cls: type[RuntimeError],
) -> str:
    """Run an external tool, mapping every failure mode onto *error_cls*."""

    try:
        completed = subprocess.run(
            list(command),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise error_cls(f"{Path(command[0]).name} timed out after {timeout}s") from exc
    except OSError as exc:
        raise error_cls(f"Unable to launch {command[0]}: {exc}") from exc
    output = (completed.stdout + completed.stderr).strip()
    if completed.returncode != 0:
        raise error_cls(
            f"{Path(command[0]).name} exited with status {completed.returncode}: {output or '<no output>'}"
        )
    return output
