from __future__ import annotations

import asyncio
import tempfile
from collections.abc import Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, TypeVar

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile

from . import __version__
from .config import AppConfig, load_config
from .core import ConversionError, OptimizationService
from .jobs import JobManager, JobOptions, JobRecord, result_payload
from .models import InvalidConfiguration, OptimizationTarget
from .schemas import (
    BatchJobRequest,
    HealthStatus,
    JobAccepted,
    JobStatusModel,
    OptimizationResultModel,
)
from .utils import generate_run_id, slugify

T = TypeVar("T")


async def run_sync(func: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
    """Execute *func* in a worker thread and return the result."""

    return await asyncio.to_thread(func, *args, **kwargs)


def get_config(request: Request) -> AppConfig:
    config = getattr(request.app.state, "config", None)
    if config is None:
        raise HTTPException(status_code=503, detail="CONFIG_UNAVAILABLE")
    return config


def get_service(request: Request) -> OptimizationService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="SERVICE_UNAVAILABLE")
    return service


def get_manager(request: Request) -> JobManager:
    manager = getattr(request.app.state, "job_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="MANAGER_UNAVAILABLE")
    return manager


def _resolve_target(preset: str | None, target_kb: float | None) -> OptimizationTarget:
    try:
        if target_kb is not None:
            return OptimizationTarget.custom_kb(target_kb)
        return OptimizationTarget.preset(preset or "balanced")
    except InvalidConfiguration as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _enforce_size_limit(payload: bytes, config: AppConfig) -> None:
    max_bytes = config.runtime.max_file_size_mb * 1024 * 1024
    if len(payload) > max_bytes:
        raise HTTPException(status_code=413, detail="SIZE_LIMIT")


def _serialize_record(record: JobRecord) -> JobStatusModel:
    return JobStatusModel.model_validate(record.to_payload())


def create_app(
    config_path: Path | None = None,
    *,
    config: AppConfig | None = None,
    service: OptimizationService | None = None,
    jobs_root: Path | None = None,
    require_enabled: bool = True,
) -> FastAPI:
    config = config or load_config(config_path)
    if require_enabled and not config.runtime.enable_local_api:
        raise RuntimeError("Local API is disabled. Enable it via config.runtime.enable_local_api")
    service = service or OptimizationService(config)
    manager = JobManager(config, service, root=jobs_root)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        manager.shutdown()

    app = FastAPI(title="WebP Optimizer", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.service = service
    app.state.job_manager = manager

    @app.get("/health", response_model=HealthStatus)
    def health(svc: OptimizationService = Depends(get_service)) -> HealthStatus:
        return HealthStatus(status="ok", version=__version__, encoder=type(svc.encoder).__name__)

    @app.post("/optimize", response_model=OptimizationResultModel)
    async def optimize(
        file: UploadFile = File(...),
        preset: str | None = Form("balanced"),
        target_kb: float | None = Form(None),
        width: int | None = Form(None),
        svc: OptimizationService = Depends(get_service),
        cfg: AppConfig = Depends(get_config),
    ) -> OptimizationResultModel:
        target = _resolve_target(preset, target_kb)
        upload_name = Path(file.filename or "upload")
        stem = slugify(upload_name.stem)
        suffix = upload_name.suffix if upload_name.suffix[1:].isalnum() else ""
        content = await file.read()
        _enforce_size_limit(content, cfg)
        with tempfile.TemporaryDirectory(prefix="webpopt-upload-") as tmp_dir:
            source = Path(tmp_dir) / f"{stem}{suffix}"
            source.write_bytes(content)
            output_dir = cfg.runtime.output_dir or Path("optimized-images")
            # one file per request; concurrent uploads may share a name
            output_path = output_dir / f"{stem}-{generate_run_id('upload')}.webp"
            try:
                result = await run_sync(
                    svc.optimize_file,
                    source,
                    target,
                    width=width,
                    output_path=output_path,
                )
            except InvalidConfiguration as exc:
                raise HTTPException(status_code=422, detail=str(exc)) from exc
            except ConversionError as exc:
                raise HTTPException(status_code=400, detail=exc.code) from exc
        payload = result_payload(result)
        payload["output_path"] = str(result.output_path.resolve())
        return OptimizationResultModel(**payload)

    @app.post("/api/v1/jobs", response_model=JobAccepted, status_code=202)
    def submit_job(payload: BatchJobRequest, mgr: JobManager = Depends(get_manager)) -> JobAccepted:
        options = JobOptions(
            preset=payload.preset,
            target_kb=payload.target_kb,
            width=payload.width,
            output_dir=payload.output_dir,
            parallelism=payload.parallelism,
        )
        try:
            record = mgr.submit([Path(p) for p in payload.paths], options)
        except InvalidConfiguration as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return JobAccepted(job_id=record.job_id, status=record.status.value, submitted_at=record.submitted_at)

    @app.get("/api/v1/jobs", response_model=list[JobStatusModel])
    def list_jobs(
        limit: int = Query(50, ge=1, le=500),
        mgr: JobManager = Depends(get_manager),
    ) -> list[JobStatusModel]:
        return [_serialize_record(record) for record in mgr.list_jobs(limit)]

    @app.get("/api/v1/jobs/{job_id}", response_model=JobStatusModel)
    def get_job(job_id: str, mgr: JobManager = Depends(get_manager)) -> JobStatusModel:
        record = mgr.get_status(job_id)
        if record is None:
            raise HTTPException(status_code=404, detail="JOB_NOT_FOUND")
        return _serialize_record(record)

    @app.post("/api/v1/jobs/{job_id}/cancel", response_model=JobStatusModel)
    def cancel_job(job_id: str, mgr: JobManager = Depends(get_manager)) -> JobStatusModel:
        if not mgr.cancel(job_id):
            raise HTTPException(status_code=409, detail="NOT_CANCELABLE")
        record = mgr.get_status(job_id)
        if record is None:
            raise HTTPException(status_code=404, detail="JOB_NOT_FOUND")
        return _serialize_record(record)

    return app


__all__ = ["create_app", "run_sync", "get_config", "get_service", "get_manager"]
