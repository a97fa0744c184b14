from __future__ import annotations

import bisect
import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from threading import Event
from typing import Callable, Sequence

from .adapters import Encoder, EncodeError, ResizeError, Resizer, get_encoder, get_resizer
from .analysis import Classifier, HeuristicClassifier, HistogramScorer, SafeClassifier, Scorer
from .config import AppConfig
from .logging import BatchSummary, RunLogEntry, RunLogger, StageTimings, append_summary_row
from .models import (
    BatchConversionResult,
    ContentType,
    ConversionResult,
    InvalidConfiguration,
    OptimizationTarget,
    SearchOutcome,
    base_quality_for,
)
from .search import SearchParameters, clamp_quality, search_quality
from .utils import (
    WORK_PREFIX,
    default_work_dir,
    format_file_size,
    generate_run_id,
    iter_images,
    size_within_limit,
    unique_temp_path,
)

logger = logging.getLogger("webp_optimizer")

ProgressCallback = Callable[[int, int, ConversionResult], None]
SkipCallback = Callable[[int, int, "ConversionError"], None]

QUALITY_SCORE_UNAVAILABLE = "QUALITY_SCORE_UNAVAILABLE"

_STAGES = {
    "NOT_FOUND": "read",
    "SIZE_LIMIT": "read",
    "RESIZE_FAILED": "resize",
    "ENCODE_FAILED": "encode",
    "FILESYSTEM": "write",
    "CANCELED": "start",
}


class ConversionError(RuntimeError):
    def __init__(self, code: str, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self._stage = stage

    @property
    def stage(self) -> str:
        return self._stage or _STAGES.get(self.code, "unknown")


@dataclass(slots=True)
class _ImageContext:
    run_id: str
    target: OptimizationTarget
    width: int
    output_path: Path
    run_logger: RunLogger
    cancellation: Event | None
    timings: StageTimings = field(default_factory=StageTimings)
    stage: str = "start"


@dataclass(slots=True)
class _BatchState:
    slots: list[ConversionResult | None]
    progress: ProgressCallback | None = None
    skipped: SkipCallback | None = None
    failures: int = 0
    cancelled: int = 0
    # indices of this batch's results already in history, ascending
    placed_indices: list[int] = field(default_factory=list)


class OptimizationService:
    def __init__(
        self,
        config: AppConfig,
        *,
        encoder: Encoder | None = None,
        resizer: Resizer | None = None,
        classifier: Classifier | None = None,
        scorer: Scorer | None = None,
    ) -> None:
        self._config = config
        self._encoder = encoder or get_encoder(config)
        self._resizer = resizer or get_resizer(config)
        self._classifier = SafeClassifier(classifier or HeuristicClassifier())
        self._scorer = scorer or HistogramScorer()
        self._parameters = SearchParameters.from_config(config.runtime.search)
        self._history: list[ConversionResult] = []
        self._bytes_saved = 0
        self._lock = threading.Lock()

    @property
    def encoder(self) -> Encoder:
        return self._encoder

    @property
    def history(self) -> tuple[ConversionResult, ...]:
        with self._lock:
            return tuple(self._history)

    @property
    def total_bytes_saved(self) -> int:
        with self._lock:
            return self._bytes_saved

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
            self._bytes_saved = 0

    @property
    def work_dir(self) -> Path:
        return self._config.runtime.work_dir or default_work_dir()

    def optimize_file(
        self,
        path: Path,
        target: OptimizationTarget | None = None,
        *,
        width: int | None = None,
        output_path: Path | None = None,
        cancellation: Event | None = None,
    ) -> ConversionResult:
        target = target or OptimizationTarget.preset("balanced")
        width = self._validate(target, width, parallelism=1)
        destination = output_path or self.default_output_dir([path]) / f"{path.stem}.webp"
        context = _ImageContext(
            run_id=generate_run_id(),
            target=target,
            width=width,
            output_path=destination,
            run_logger=RunLogger(destination.parent / self._config.runtime.log_file),
            cancellation=cancellation,
        )
        result = self._process(path, context)
        with self._lock:
            self._history.append(result)
            self._bytes_saved += result.bytes_saved
        return result

    def batch_optimize(
        self,
        inputs: Sequence[Path],
        target: OptimizationTarget | None = None,
        *,
        width: int | None = None,
        output_dir: Path | None = None,
        progress: ProgressCallback | None = None,
        skipped: SkipCallback | None = None,
        cancellation: Event | None = None,
        parallelism: int | None = None,
    ) -> BatchConversionResult:
        """Optimize every image found in *inputs* towards *target*.

        *progress* is called once per finished image and *skipped* once per
        image that failed. Both run outside the service lock. A failing image
        never aborts the batch.
        """

        target = target or OptimizationTarget.preset("balanced")
        if parallelism is None:
            parallelism = self._config.runtime.parallelism
        width = self._validate(target, width, parallelism=parallelism)

        paths = list(iter_images(inputs, self._config.runtime.extensions))
        if not paths:
            logger.info("No images found to process.")
            return BatchConversionResult(results=[], summary=BatchSummary())

        destination = output_dir or self.default_output_dir(inputs)
        run_logger = RunLogger(destination / self._config.runtime.log_file)
        batch_id = generate_run_id("batch")
        contexts = [
            _ImageContext(
                run_id=batch_id,
                target=target,
                width=width,
                output_path=output_path,
                run_logger=run_logger,
                cancellation=cancellation,
            )
            for output_path in self._plan_outputs(paths, destination)
        ]
        state = _BatchState(
            slots=[None] * len(paths),
            progress=progress,
            skipped=skipped,
        )
        logger.info(
            "Optimizing %d image(s) towards %s (%s) at width %d",
            len(paths),
            format_file_size(target.target_size_bytes),
            target.label,
            width,
        )

        if parallelism == 1:
            self._run_sequential(paths, contexts, state)
        else:
            self._run_parallel(paths, contexts, state, parallelism)

        results = [result for result in state.slots if result is not None]
        summary = BatchSummary.from_results(
            results,
            total=len(paths),
            failures=state.failures,
            cancelled=state.cancelled,
        )
        append_summary_row(destination / self._config.runtime.summary_csv, summary, batch_id)
        logger.info(
            "Batch %s: %d attempted, %d succeeded, %d skipped, %d cancelled, %s saved",
            batch_id,
            summary.attempted,
            summary.successes,
            summary.failures,
            summary.cancelled,
            format_file_size(summary.bytes_saved),
        )
        return BatchConversionResult(results=results, summary=summary)

    def default_output_dir(self, inputs: Sequence[Path]) -> Path:
        if self._config.runtime.output_dir is not None:
            return self._config.runtime.output_dir
        first = Path(inputs[0])
        if first.is_dir():
            return first.parent / f"{first.name}-optimized"
        return first.parent / "optimized-images"

    def _validate(self, target: OptimizationTarget, width: int | None, *, parallelism: int) -> int:
        if not target.target_size_bytes > 0:
            raise InvalidConfiguration(f"Target size must be positive, got {target.target_size_bytes!r}")
        width = self._config.runtime.target_width if width is None else width
        if width <= 0:
            raise InvalidConfiguration(f"Invalid width: {width}")
        if parallelism < 1:
            raise InvalidConfiguration(f"Parallelism must be at least 1, got {parallelism}")
        return width

    def _plan_outputs(self, paths: Sequence[Path], destination: Path) -> list[Path]:
        taken: set[str] = set()
        planned: list[Path] = []
        for path in paths:
            stem = path.stem
            candidate = stem
            counter = 1
            while candidate.lower() in taken:
                candidate = f"{stem}-{counter}"
                counter += 1
            taken.add(candidate.lower())
            planned.append(destination / f"{candidate}.webp")
        return planned

    def _run_sequential(
        self,
        paths: Sequence[Path],
        contexts: Sequence[_ImageContext],
        state: _BatchState,
    ) -> None:
        for index, (path, context) in enumerate(zip(paths, contexts)):
            if context.cancellation is not None and context.cancellation.is_set():
                state.cancelled = len(paths) - index
                logger.info("Batch cancelled; %d image(s) not started", state.cancelled)
                return
            self._complete(index, self._run_item(path, context), state)

    def _run_parallel(
        self,
        paths: Sequence[Path],
        contexts: Sequence[_ImageContext],
        state: _BatchState,
        parallelism: int,
    ) -> None:
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=parallelism, thread_name_prefix="webp-worker"
        ) as executor:
            future_map = {
                executor.submit(self._run_item, path, context): index
                for index, (path, context) in enumerate(zip(paths, contexts))
            }
            for future in concurrent.futures.as_completed(future_map):
                self._complete(future_map[future], future.result(), state)

    def _run_item(self, path: Path, context: _ImageContext) -> ConversionResult | ConversionError:
        try:
            return self._process(path, context)
        except ConversionError as exc:
            if exc.code != "CANCELED":
                logger.warning("Skipped %s: %s stage failed (%s)", path.name, exc.stage, exc)
            return exc

    def _complete(self, index: int, outcome: ConversionResult | ConversionError, state: _BatchState) -> None:
        total = len(state.slots)
        if isinstance(outcome, ConversionError):
            with self._lock:
                if outcome.code == "CANCELED":
                    state.cancelled += 1
                    return
                state.failures += 1
            if state.skipped is not None:
                state.skipped(index, total, outcome)
            return
        with self._lock:
            state.slots[index] = outcome
            self._insert_history(index, outcome, state)
            self._bytes_saved += outcome.bytes_saved
        if state.progress is not None:
            state.progress(index, total, outcome)

    def _insert_history(self, index: int, result: ConversionResult, state: _BatchState) -> None:
        # caller holds self._lock
        position = bisect.bisect(state.placed_indices, index)
        at = None
        if position < len(state.placed_indices):
            successor = state.slots[state.placed_indices[position]]
            # None once clear_history() has dropped the successor
            at = next((i for i, item in enumerate(self._history) if item is successor), None)
        if at is None:
            self._history.append(result)
        else:
            self._history.insert(at, result)
        state.placed_indices.insert(position, index)

    def _process(self, path: Path, context: _ImageContext) -> ConversionResult:
        try:
            result = self._optimize_internal(path, context)
        except ConversionError as exc:
            self._log_failure(path, context, exc)
            raise
        except OSError as exc:
            error = ConversionError("FILESYSTEM", f"{path.name}: {exc}", stage=context.stage)
            self._log_failure(path, context, error)
            raise error from exc
        except Exception as exc:
            logger.exception("Unexpected error in %s stage for %s", context.stage, path.name)
            error = ConversionError("INTERNAL_ERROR", f"{path.name}: {exc}", stage=context.stage)
            self._log_failure(path, context, error)
            raise error from exc
        self._append_success_log(path, context, result)
        return result

    def _optimize_internal(self, path: Path, context: _ImageContext) -> ConversionResult:
        self._ensure_not_cancelled(context, path)
        context.stage = "read"
        original_size = self._validate_source(path)
        suffix = getattr(self._resizer, "working_suffix", ".png")
        working = unique_temp_path(self.work_dir, WORK_PREFIX, suffix)
        try:
            context.stage = "resize"
            self._resize(path, working, context)
            context.output_path.parent.mkdir(parents=True, exist_ok=True)
            if self._config.runtime.smart_mode:
                context.stage = "classify"
                content_type = self._classify(working, context)
                base_quality = base_quality_for(content_type)
                context.stage = "encode"
                outcome = self._search(working, base_quality, context)
            else:
                content_type = ContentType.PHOTO
                base_quality = clamp_quality(self._config.runtime.default_quality)
                context.stage = "encode"
                outcome = self._encode_fixed(working, base_quality, context)
            context.stage = "write"
            output_size = context.output_path.stat().st_size
            context.stage = "score"
            quality_score, score_warnings = self._score(working, context)
        finally:
            working.unlink(missing_ok=True)

        return ConversionResult(
            source_path=path,
            output_path=context.output_path,
            chosen_quality=outcome.quality,
            original_size_bytes=original_size,
            output_size_bytes=output_size,
            content_type=content_type,
            quality_score=quality_score,
            base_quality=base_quality,
            search_size_bytes=outcome.size_bytes,
            trials=len(outcome.trials),
            warnings=outcome.warnings + score_warnings,
            run_id=context.run_id,
        )

    def _ensure_not_cancelled(self, context: _ImageContext, path: Path) -> None:
        if context.cancellation is not None and context.cancellation.is_set():
            raise ConversionError("CANCELED", f"Batch cancelled before {path.name}")

    def _validate_source(self, path: Path) -> int:
        if not path.is_file():
            raise ConversionError("NOT_FOUND", f"Source image does not exist: {path}")
        if not size_within_limit(path, self._config.runtime.max_file_size_mb):
            raise ConversionError("SIZE_LIMIT", f"File exceeds configured limit: {path.name}")
        return path.stat().st_size

    def _resize(self, path: Path, working: Path, context: _ImageContext) -> None:
        start = time.perf_counter()
        try:
            self._resizer.resize(path, context.width, working)
        except ResizeError as exc:
            raise ConversionError("RESIZE_FAILED", str(exc)) from exc
        context.timings.resize_ms = (time.perf_counter() - start) * 1000

    def _classify(self, working: Path, context: _ImageContext) -> ContentType:
        start = time.perf_counter()
        content_type = self._classifier.classify(working)
        context.timings.classify_ms = (time.perf_counter() - start) * 1000
        return content_type

    def _search(self, working: Path, base_quality: int, context: _ImageContext) -> SearchOutcome:
        start = time.perf_counter()
        try:
            outcome = search_quality(
                working,
                context.target.target_size_bytes,
                base_quality,
                self._encoder,
                context.output_path,
                work_dir=self.work_dir,
                parameters=self._parameters,
            )
        except EncodeError as exc:
            raise ConversionError("ENCODE_FAILED", str(exc)) from exc
        context.timings.search_ms = (time.perf_counter() - start) * 1000
        return outcome

    def _encode_fixed(self, working: Path, quality: int, context: _ImageContext) -> SearchOutcome:
        start = time.perf_counter()
        try:
            size = self._encoder.encode(working, quality, context.output_path)
        except EncodeError as exc:
            raise ConversionError("ENCODE_FAILED", str(exc)) from exc
        context.timings.search_ms = (time.perf_counter() - start) * 1000
        return SearchOutcome(quality=quality, size_bytes=size)

    def _score(self, working: Path, context: _ImageContext) -> tuple[float, tuple[str, ...]]:
        start = time.perf_counter()
        try:
            score = float(self._scorer.score(working, context.output_path))
        except (OSError, ValueError) as exc:
            logger.debug("Quality score unavailable for %s: %s", context.output_path.name, exc)
            return 0.0, (QUALITY_SCORE_UNAVAILABLE,)
        finally:
            context.timings.score_ms = (time.perf_counter() - start) * 1000
        return score, ()

    def _log_failure(self, path: Path, context: _ImageContext, exc: ConversionError) -> None:
        size_bytes = path.stat().st_size if path.is_file() else 0
        context.run_logger.append(
            RunLogEntry(
                run_id=context.run_id,
                source=str(path),
                status="canceled" if exc.code == "CANCELED" else "failure",
                stage=exc.stage,
                error_code=exc.code,
                content_type=None,
                quality=None,
                trials=0,
                original_size_bytes=size_bytes,
                output_size_bytes=0,
                output_path=None,
                warnings=[],
                timings=context.timings,
            )
        )

    def _append_success_log(self, path: Path, context: _ImageContext, result: ConversionResult) -> None:
        context.run_logger.append(
            RunLogEntry(
                run_id=context.run_id,
                source=str(path),
                status="success",
                stage=None,
                error_code=None,
                content_type=result.content_type.value,
                quality=result.chosen_quality,
                trials=result.trials,
                original_size_bytes=result.original_size_bytes,
                output_size_bytes=result.output_size_bytes,
                output_path=str(result.output_path),
                warnings=list(result.warnings),
                timings=context.timings,
            )
        )


__all__ = [
    "OptimizationService",
    "ConversionError",
    "ConversionResult",
    "ProgressCallback",
    "SkipCallback",
    "BatchConversionResult",
    "QUALITY_SCORE_UNAVAILABLE",
]
