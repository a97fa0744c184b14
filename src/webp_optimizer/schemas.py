from __future__ import annotations

from pydantic import BaseModel, Field


class HealthStatus(BaseModel):
    status: str
    version: str
    encoder: str


class OptimizationResultModel(BaseModel):
    source_path: str
    output_path: str
    chosen_quality: int
    original_size_bytes: int
    output_size_bytes: int
    content_type: str
    quality_score: float
    warnings: list[str] = Field(default_factory=list)


class BatchJobRequest(BaseModel):
    paths: list[str] = Field(min_length=1)
    preset: str | None = "balanced"
    target_kb: float | None = Field(default=None, gt=0)
    width: int | None = Field(default=None, gt=0)
    output_dir: str | None = None
    parallelism: int | None = Field(default=None, ge=1, le=16)


class JobAccepted(BaseModel):
    job_id: str
    status: str
    submitted_at: str | None


class JobSummaryModel(BaseModel):
    total: int
    attempted: int
    successes: int
    failures: int
    cancelled: int
    bytes_saved: int
    average_quality: float
    warnings: dict[str, int] = Field(default_factory=dict)


class JobStatusModel(BaseModel):
    job_id: str
    status: str
    progress: float
    total: int
    completed: int
    skipped: int = 0
    submitted_at: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    results: list[OptimizationResultModel] = Field(default_factory=list)
    summary: JobSummaryModel | None = None
    error_code: str | None = None
    error_message: str | None = None
