from __future__ import annotations

import shutil
import threading
import time
from pathlib import Path

import pytest

from webp_optimizer.config import AppConfig, RuntimeConfig
from webp_optimizer.core import OptimizationService
from webp_optimizer.jobs import JobManager, JobOptions, JobStatus
from webp_optimizer.models import KB, ContentType, InvalidConfiguration


class CopyResizer:
    working_suffix = ".png"

    def __init__(self, gate: threading.Event | None = None) -> None:
        self._gate = gate

    def resize(self, source: Path, width: int, destination: Path) -> Path:
        if self._gate is not None:
            self._gate.wait(timeout=5)
        shutil.copyfile(source, destination)
        return destination


class LinearEncoder:
    def encode(self, source: Path, quality: int, destination: Path) -> int:
        destination.write_bytes(b"\0" * (quality * KB))
        return destination.stat().st_size


class PhotoClassifier:
    def classify(self, path: Path) -> ContentType:
        return ContentType.PHOTO


class ConstantScorer:
    def score(self, original: Path, optimized: Path) -> float:
        return 1.0


def build_manager(tmp_path: Path, resizer: CopyResizer | None = None) -> JobManager:
    runtime = RuntimeConfig(output_dir=tmp_path / "out", work_dir=tmp_path / "work", enable_local_api=True)
    config = AppConfig(runtime=runtime)
    service = OptimizationService(
        config,
        encoder=LinearEncoder(),
        resizer=resizer or CopyResizer(),
        classifier=PhotoClassifier(),
        scorer=ConstantScorer(),
    )
    return JobManager(config, service, root=tmp_path / "jobs")


def make_images(folder: Path, count: int) -> list[Path]:
    folder.mkdir(parents=True, exist_ok=True)
    paths = []
    for index in range(count):
        path = folder / f"img{index}.jpg"
        path.write_bytes(b"x" * 300 * KB)
        paths.append(path)
    return paths


def wait_for_status(manager: JobManager, job_id: str, status: JobStatus) -> None:
    for _ in range(200):
        record = manager.get_status(job_id)
        if record and record.status is status:
            return
        time.sleep(0.05)
    raise AssertionError(f"Job {job_id} did not reach {status}")


def test_job_manager_runs_batch(tmp_path: Path) -> None:
    manager = build_manager(tmp_path)
    try:
        record = manager.submit(make_images(tmp_path / "src", 3), JobOptions(target_kb=50))
        assert record.status is JobStatus.QUEUED
        final = manager.wait(record.job_id, timeout=10)
        assert final is not None
        assert final.status is JobStatus.SUCCEEDED
        assert final.progress == 1.0
        assert final.completed == 3
        assert len(final.results) == 3
        assert final.summary is not None
        assert final.summary["successes"] == 3
        assert all(Path(str(item["output_path"])).exists() for item in final.results)
    finally:
        manager.shutdown()


def test_job_manager_records_invalid_width(tmp_path: Path) -> None:
    manager = build_manager(tmp_path)
    try:
        record = manager.submit(make_images(tmp_path / "src", 1), JobOptions(width=0))
        final = manager.wait(record.job_id, timeout=10)
        assert final is not None
        assert final.status is JobStatus.FAILED
        assert final.error_code == "INVALID_CONFIGURATION"
    finally:
        manager.shutdown()


def test_job_manager_rejects_unknown_preset(tmp_path: Path) -> None:
    manager = build_manager(tmp_path)
    try:
        with pytest.raises(InvalidConfiguration):
            manager.submit(make_images(tmp_path / "src", 1), JobOptions(preset="tiny"))
        assert manager.list_jobs() == []
    finally:
        manager.shutdown()


def test_job_manager_cancel(tmp_path: Path) -> None:
    gate = threading.Event()
    manager = build_manager(tmp_path, resizer=CopyResizer(gate))
    try:
        record = manager.submit(make_images(tmp_path / "src", 4), JobOptions())
        wait_for_status(manager, record.job_id, JobStatus.RUNNING)
        assert manager.cancel(record.job_id) is True
        gate.set()
        final = manager.wait(record.job_id, timeout=10)
        assert final is not None
        assert final.status is JobStatus.CANCELED
        assert final.summary is not None
        assert final.summary["cancelled"] >= 1
        assert manager.cancel(record.job_id) is False
    finally:
        manager.shutdown()


def test_job_listing_reads_back_status_files(tmp_path: Path) -> None:
    manager = build_manager(tmp_path)
    try:
        first = manager.submit(make_images(tmp_path / "a", 1), JobOptions())
        manager.wait(first.job_id, timeout=10)
        second = manager.submit(make_images(tmp_path / "b", 1), JobOptions(preset="aggressive"))
        manager.wait(second.job_id, timeout=10)
        listed = [record.job_id for record in manager.list_jobs()]
        assert set(listed) == {first.job_id, second.job_id}
        assert (tmp_path / "jobs" / "jobs.jsonl").exists()
    finally:
        manager.shutdown()


def test_job_progress_counts_skipped_images(tmp_path: Path) -> None:
    manager = build_manager(tmp_path)
    try:
        images = make_images(tmp_path / "src", 2)
        images.insert(1, tmp_path / "src" / "missing.jpg")
        record = manager.submit(images, JobOptions(target_kb=50))
        final = manager.wait(record.job_id, timeout=10)
        assert final is not None
        assert final.status is JobStatus.SUCCEEDED
        assert final.completed == final.total == 3
        assert final.skipped == 1
        assert len(final.results) == 2
    finally:
        manager.shutdown()
