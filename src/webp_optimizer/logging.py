from __future__ import annotations

import csv
import json
import threading
import time
from dataclasses import asdict, dataclass, field
from io import StringIO
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from .utils import atomic_write

if TYPE_CHECKING:
    from .models import ConversionResult


SUMMARY_HEADER = [
    "batch_id",
    "timestamp",
    "total",
    "successes",
    "failures",
    "cancelled",
    "bytes_saved",
    "average_quality",
    "warnings",
]


@dataclass(slots=True)
class StageTimings:
    resize_ms: float = 0.0
    classify_ms: float = 0.0
    search_ms: float = 0.0
    score_ms: float = 0.0


@dataclass(slots=True)
class RunLogEntry:
    run_id: str
    source: str
    status: str
    stage: str | None
    error_code: str | None
    content_type: str | None
    quality: int | None
    trials: int
    original_size_bytes: int
    output_size_bytes: int
    output_path: str | None
    warnings: list[str]
    timings: StageTimings

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["timings"] = asdict(self.timings)
        return payload


class RunLogger:
    def __init__(self, log_file: Path) -> None:
        self._log_file = log_file
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._log_file

    def append(self, entry: RunLogEntry) -> None:
        line = json.dumps(entry.to_dict(), ensure_ascii=False)
        with self._lock:
            self._log_file.parent.mkdir(parents=True, exist_ok=True)
            with self._log_file.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")


@dataclass(slots=True)
class BatchSummary:
    timestamp: float = field(default_factory=time.time)
    total: int = 0
    successes: int = 0
    failures: int = 0
    cancelled: int = 0
    bytes_saved: int = 0
    average_quality: float = 0.0
    warnings: dict[str, int] = field(default_factory=dict)

    @property
    def processed_count(self) -> int:
        return self.successes

    @property
    def attempted(self) -> int:
        return self.total - self.cancelled

    @classmethod
    def from_results(
        cls,
        results: Iterable[ConversionResult],
        *,
        total: int | None = None,
        failures: int = 0,
        cancelled: int = 0,
    ) -> BatchSummary:
        items = list(results)
        warnings: dict[str, int] = {}
        for result in items:
            for warning in result.warnings:
                warnings[warning] = warnings.get(warning, 0) + 1
        average = sum(r.chosen_quality for r in items) / len(items) if items else 0.0
        return cls(
            total=total if total is not None else len(items) + failures + cancelled,
            successes=len(items),
            failures=failures,
            cancelled=cancelled,
            bytes_saved=sum(r.bytes_saved for r in items),
            average_quality=average,
            warnings=warnings,
        )

    def as_row(self, batch_id: str) -> list[str]:
        warning_json = json.dumps(self.warnings, sort_keys=True)
        return [
            batch_id,
            time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp)),
            str(self.total),
            str(self.successes),
            str(self.failures),
            str(self.cancelled),
            str(self.bytes_saved),
            f"{self.average_quality:.1f}",
            warning_json,
        ]


def write_summary_csv(path: Path, header: list[str], rows: list[list[str]]) -> None:
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(header)
    writer.writerows(rows)
    atomic_write(path, buffer.getvalue())


def append_summary_row(path: Path, summary: BatchSummary, batch_id: str) -> None:
    header = SUMMARY_HEADER
    rows: list[list[str]] = []
    if path.exists():
        with path.open("r", encoding="utf-8", newline="") as handle:
            reader = list(csv.reader(handle))
        if reader:
            header = reader[0]
            rows = reader[1:]
    rows.append(summary.as_row(batch_id))
    write_summary_csv(path, header, rows)
