from __future__ import annotations

import hashlib
import os
import re
import tempfile
import time
import uuid
from collections.abc import Iterable
from pathlib import Path
from typing import Iterator


SAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")
TRIAL_PREFIX = "webpopt-trial-"
WORK_PREFIX = "webpopt-work-"


def slugify(value: str, max_length: int = 120) -> str:
    normalized = SAFE_FILENAME_RE.sub("-", value.strip())
    normalized = re.sub("-+", "-", normalized)
    normalized = normalized.replace("-.", ".")
    normalized = normalized.strip("-._")
    if not normalized:
        normalized = "image"
    if len(normalized) > max_length:
        normalized = normalized[:max_length]
    return normalized


def generate_run_id(prefix: str = "run") -> str:
    epoch_ms = int(time.time() * 1000)
    random_bits = hashlib.sha256(os.urandom(16)).hexdigest()[:8]
    return f"{prefix}-{epoch_ms}-{random_bits}"


def unique_temp_path(directory: Path, prefix: str, suffix: str) -> Path:
    """Return a path in *directory* that no other process or thread will pick.

    The name carries the pid and a random token, so concurrent trials never collide.
    Nothing is created on disk.
    """

    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"{prefix}{os.getpid()}-{uuid.uuid4().hex}{suffix}"


def default_work_dir() -> Path:
    return Path(tempfile.gettempdir())


def atomic_write(path: Path, data: str, encoding: str = "utf-8") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding=encoding) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
    os.replace(tmp.name, path)


def iter_images(paths: Iterable[Path], extensions: Iterable[str]) -> Iterator[Path]:
    """Yield image files from *paths*; folders are scanned one level deep."""

    allowed = {ext.lower().lstrip(".") for ext in extensions}
    for path in paths:
        if path.is_dir():
            for file_path in sorted(path.iterdir()):
                if file_path.name.startswith("."):
                    continue
                if file_path.is_file() and file_path.suffix.lower().lstrip(".") in allowed:
                    yield file_path
        else:
            # explicit files are passed through so a missing one is reported, not dropped
            yield path


def size_within_limit(path: Path, max_mb: int) -> bool:
    return path.stat().st_size <= max_mb * 1024 * 1024


def format_file_size(size_bytes: float) -> str:
    if size_bytes == float("inf"):
        return "unknown"
    if size_bytes >= 1_048_576:
        return f"{size_bytes / 1_048_576:.1f} MB"
    if size_bytes >= 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes:.0f} B"


def reduction_percent(original: int, optimized: int) -> int:
    if original <= 0:
        return 0
    return int((original - optimized) / original * 100)


def remove_stale_files(directory: Path, prefixes: Iterable[str], older_than_s: float = 0.0) -> int:
    if not directory.exists():
        return 0
    threshold = time.time() - older_than_s
    removed = 0
    prefix_tuple = tuple(prefixes)
    for candidate in directory.iterdir():
        if not candidate.is_file() or not candidate.name.startswith(prefix_tuple):
            continue
        if candidate.stat().st_mtime > threshold:
            continue
        candidate.unlink(missing_ok=True)
        removed += 1
    return removed
