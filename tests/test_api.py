from __future__ import annotations

import shutil
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from webp_optimizer.api import create_app
from webp_optimizer.config import AppConfig, RuntimeConfig
from webp_optimizer.core import OptimizationService
from webp_optimizer.models import KB, ContentType


class CopyResizer:
    working_suffix = ".png"

    def resize(self, source: Path, width: int, destination: Path) -> Path:
        shutil.copyfile(source, destination)
        return destination


class LinearEncoder:
    def encode(self, source: Path, quality: int, destination: Path) -> int:
        destination.write_bytes(b"\0" * (quality * KB))
        return destination.stat().st_size


class ArtworkClassifier:
    def classify(self, path: Path) -> ContentType:
        return ContentType.ARTWORK


class ConstantScorer:
    def score(self, original: Path, optimized: Path) -> float:
        return 0.75


def build_client(tmp_path: Path) -> TestClient:
    config = AppConfig(
        runtime=RuntimeConfig(output_dir=tmp_path / "out", work_dir=tmp_path / "work", enable_local_api=True)
    )
    service = OptimizationService(
        config,
        encoder=LinearEncoder(),
        resizer=CopyResizer(),
        classifier=ArtworkClassifier(),
        scorer=ConstantScorer(),
    )
    return TestClient(create_app(config=config, service=service, jobs_root=tmp_path / "jobs"))


def test_disabled_api_refuses_to_start() -> None:
    with pytest.raises(RuntimeError):
        create_app(config=AppConfig())


def test_health(tmp_path: Path) -> None:
    with build_client(tmp_path) as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["encoder"] == "LinearEncoder"


def test_optimize_upload(tmp_path: Path) -> None:
    with build_client(tmp_path) as client:
        response = client.post(
            "/optimize",
            files={"file": ("poster.png", b"x" * 200 * KB, "image/png")},
            data={"target_kb": "60"},
        )
    assert response.status_code == 200
    body = response.json()
    assert body["content_type"] == "Artwork"
    assert body["quality_score"] == pytest.approx(0.75)
    assert Path(body["output_path"]).name.startswith("poster-upload-")
    assert Path(body["output_path"]).suffix == ".webp"
    assert Path(body["output_path"]).exists()


def test_optimize_rejects_bad_preset(tmp_path: Path) -> None:
    with build_client(tmp_path) as client:
        response = client.post(
            "/optimize",
            files={"file": ("poster.png", b"x", "image/png")},
            data={"preset": "tiny"},
        )
    assert response.status_code == 422


def test_batch_job_lifecycle(tmp_path: Path) -> None:
    folder = tmp_path / "src"
    folder.mkdir()
    for name in ("a.jpg", "b.jpg"):
        (folder / name).write_bytes(b"x" * 200 * KB)

    with build_client(tmp_path) as client:
        response = client.post("/api/v1/jobs", json={"paths": [str(folder)], "preset": "aggressive"})
        assert response.status_code == 202
        job_id = response.json()["job_id"]

        body = {}
        for _ in range(200):
            body = client.get(f"/api/v1/jobs/{job_id}").json()
            if body["status"] in {"succeeded", "failed", "canceled"}:
                break
            time.sleep(0.05)

        assert body["status"] == "succeeded"
        assert body["summary"]["successes"] == 2
        assert [Path(item["source_path"]).name for item in body["results"]] == ["a.jpg", "b.jpg"]

        listed = client.get("/api/v1/jobs").json()
        assert [item["job_id"] for item in listed] == [job_id]
        assert client.post(f"/api/v1/jobs/{job_id}/cancel").status_code == 409
        assert client.get("/api/v1/jobs/unknown").status_code == 404


def test_batch_job_validation(tmp_path: Path) -> None:
    with build_client(tmp_path) as client:
        assert client.post("/api/v1/jobs", json={"paths": []}).status_code == 422
        assert client.post("/api/v1/jobs", json={"paths": ["x.jpg"], "target_kb": 0}).status_code == 422
        assert client.post("/api/v1/jobs", json={"paths": ["x.jpg"], "preset": "tiny"}).status_code == 422


def test_same_name_uploads_do_not_overwrite(tmp_path: Path) -> None:
    with build_client(tmp_path) as client:
        outputs = [
            client.post(
                "/optimize",
                files={"file": ("My Poster!.png", b"x" * size * KB, "image/png")},
                data={"target_kb": "60"},
            ).json()["output_path"]
            for size in (100, 200)
        ]
    assert outputs[0] != outputs[1]
    assert all(Path(output).exists() for output in outputs)
    assert all(Path(output).name.startswith("My-Poster-upload-") for output in outputs)
