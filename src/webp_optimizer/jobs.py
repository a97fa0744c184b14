from __future__ import annotations

import json
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from .config import AppConfig
from .core import ConversionError, OptimizationService
from .models import BatchConversionResult, ConversionResult, InvalidConfiguration, OptimizationTarget
from .utils import atomic_write, generate_run_id

logger = logging.getLogger("webp_optimizer")

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
DEFAULT_JOBS_DIR = Path(".webpopt-jobs")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).strftime(ISO_FORMAT)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def terminal(self) -> bool:
        return self in {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED}


@dataclass(slots=True)
class JobOptions:
    preset: str | None = "balanced"
    target_kb: float | None = None
    width: int | None = None
    output_dir: str | None = None
    parallelism: int | None = None

    def to_target(self) -> OptimizationTarget:
        if self.target_kb is not None:
            return OptimizationTarget.custom_kb(self.target_kb)
        return OptimizationTarget.preset(self.preset or "balanced")

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(slots=True)
class JobRecord:
    job_id: str
    status: JobStatus
    progress: float = 0.0
    total: int = 0
    completed: int = 0
    skipped: int = 0
    submitted_at: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    inputs: list[str] = field(default_factory=list)
    options: dict[str, object] = field(default_factory=dict)
    results: list[dict[str, object]] = field(default_factory=list)
    summary: dict[str, object] | None = None
    error_code: str | None = None
    error_message: str | None = None

    def to_payload(self) -> dict[str, object]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_payload(cls, data: dict[str, object]) -> JobRecord:
        known = {name for name in cls.__dataclass_fields__}
        values = {key: value for key, value in data.items() if key in known}
        values["status"] = JobStatus(str(data.get("status", JobStatus.QUEUED.value)))
        return cls(**values)  # type: ignore[arg-type]


def result_payload(result: ConversionResult) -> dict[str, object]:
    return {
        "source_path": str(result.source_path),
        "output_path": str(result.output_path),
        "chosen_quality": result.chosen_quality,
        "original_size_bytes": result.original_size_bytes,
        "output_size_bytes": result.output_size_bytes,
        "content_type": result.content_type.value,
        "quality_score": result.quality_score,
        "warnings": list(result.warnings),
    }


def summary_payload(batch: BatchConversionResult) -> dict[str, object]:
    summary = batch.summary
    return {
        "total": summary.total,
        "attempted": summary.attempted,
        "successes": summary.successes,
        "failures": summary.failures,
        "cancelled": summary.cancelled,
        "bytes_saved": summary.bytes_saved,
        "average_quality": summary.average_quality,
        "warnings": summary.warnings,
    }


class JobStore:
    def __init__(self, root: Path) -> None:
        self._root = root
        self._index = root / "jobs.jsonl"
        self._lock = threading.Lock()
        self._root.mkdir(parents=True, exist_ok=True)

    def status_path(self, job_id: str) -> Path:
        return self._root / job_id / "status.json"

    def write_status(self, record: JobRecord) -> None:
        atomic_write(self.status_path(record.job_id), json.dumps(record.to_payload(), indent=2))

    def read_status(self, job_id: str) -> JobRecord | None:
        path = self.status_path(job_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None
        return JobRecord.from_payload(data)

    def append_index(self, record: JobRecord) -> None:
        line = json.dumps({"job_id": record.job_id, "status": record.status.value, "at": _iso(_utc_now())})
        with self._lock:
            with self._index.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def list_latest(self, limit: int = 50) -> list[JobRecord]:
        records: list[JobRecord] = []
        for status_file in sorted(self._root.glob("*/status.json"), key=lambda p: p.stat().st_mtime):
            record = self.read_status(status_file.parent.name)
            if record is not None:
                records.append(record)
        if limit <= 0:
            return records
        return records[-limit:]


@dataclass(slots=True)
class JobHandle:
    job_id: str
    inputs: list[Path]
    options: JobOptions
    cancel_event: threading.Event


class JobManager:
    def __init__(self, config: AppConfig, service: OptimizationService, *, root: Path | None = None) -> None:
        self._config = config
        self._service = service
        self._store = JobStore(root or DEFAULT_JOBS_DIR)
        pool_size = min(4, max(1, os.cpu_count() or 1))
        self._executor = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="job-worker")
        self._jobs: dict[str, JobHandle] = {}
        self._futures: dict[str, Future[None]] = {}
        self._lock = threading.Lock()
        self._record_lock = threading.Lock()

    def submit(self, inputs: list[Path], options: JobOptions) -> JobRecord:
        # resolve the target now so a bad preset is rejected before queueing
        options.to_target()
        job_id = generate_run_id("job")
        record = JobRecord(
            job_id=job_id,
            status=JobStatus.QUEUED,
            submitted_at=_iso(_utc_now()),
            inputs=[str(path) for path in inputs],
            options=options.as_dict(),
        )
        self._store.write_status(record)
        self._store.append_index(record)
        handle = JobHandle(job_id=job_id, inputs=list(inputs), options=options, cancel_event=threading.Event())
        with self._lock:
            self._jobs[job_id] = handle
            self._futures[job_id] = self._executor.submit(self._run_job, handle)
        return record

    def _run_job(self, handle: JobHandle) -> None:
        try:
            self._execute_job(handle)
        finally:
            with self._lock:
                self._jobs.pop(handle.job_id, None)
                self._futures.pop(handle.job_id, None)

    def _execute_job(self, handle: JobHandle) -> None:
        if handle.cancel_event.is_set():
            self._finish(handle.job_id, JobStatus.CANCELED)
            return
        self._update(handle.job_id, status=JobStatus.RUNNING, started_at=_iso(_utc_now()))

        def _advance(total: int, result: ConversionResult | None) -> None:
            with self._record_lock:
                record = self._store.read_status(handle.job_id)
                if record is None:
                    return
                record.completed += 1
                record.total = total
                record.progress = min(1.0, record.completed / total)
                if result is None:
                    record.skipped += 1
                else:
                    record.results.append(result_payload(result))
                self._store.write_status(record)

        def _progress(index: int, total: int, result: ConversionResult) -> None:
            _advance(total, result)

        def _skipped(index: int, total: int, error: ConversionError) -> None:
            _advance(total, None)

        options = handle.options
        try:
            batch = self._service.batch_optimize(
                handle.inputs,
                options.to_target(),
                width=options.width,
                output_dir=Path(options.output_dir) if options.output_dir else None,
                progress=_progress,
                skipped=_skipped,
                cancellation=handle.cancel_event,
                parallelism=options.parallelism,
            )
        except InvalidConfiguration as exc:
            self._finish(
                handle.job_id,
                JobStatus.FAILED,
                error_code="INVALID_CONFIGURATION",
                error_message=str(exc),
            )
            return
        except Exception as exc:  # pragma: no cover - unexpected paths
            logger.exception("Job %s failed", handle.job_id)
            self._finish(handle.job_id, JobStatus.FAILED, error_code="UNKNOWN", error_message=str(exc))
            raise

        status = JobStatus.CANCELED if handle.cancel_event.is_set() else JobStatus.SUCCEEDED
        self._finish(handle.job_id, status, summary=summary_payload(batch), total=batch.summary.total)

    def _update(self, job_id: str, **changes: object) -> JobRecord | None:
        with self._record_lock:
            record = self._store.read_status(job_id)
            if record is None:
                return None
            for key, value in changes.items():
                setattr(record, key, value)
            self._store.write_status(record)
            return record

    def _finish(self, job_id: str, status: JobStatus, **changes: object) -> None:
        if status is JobStatus.SUCCEEDED:
            changes.setdefault("progress", 1.0)
        record = self._update(job_id, status=status, finished_at=_iso(_utc_now()), **changes)
        if record is not None:
            self._store.append_index(record)

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            handle = self._jobs.get(job_id)
        if handle is None:
            return False
        handle.cancel_event.set()
        return True

    def wait(self, job_id: str, timeout: float | None = None) -> JobRecord | None:
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get_status(job_id)

    def get_status(self, job_id: str) -> JobRecord | None:
        return self._store.read_status(job_id)

    def list_jobs(self, limit: int = 50) -> list[JobRecord]:
        return self._store.list_latest(limit)

    def shutdown(self) -> None:
        with self._lock:
            handles = list(self._jobs.values())
        for handle in handles:
            handle.cancel_event.set()
        self._executor.shutdown(wait=False)


__all__ = [
    "JobManager",
    "JobOptions",
    "JobRecord",
    "JobStatus",
    "JobStore",
    "result_payload",
    "summary_payload",
]
