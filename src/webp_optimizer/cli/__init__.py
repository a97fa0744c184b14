from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table

from ..config import AppConfig, dump_config, load_config
from ..core import ConversionError, OptimizationService
from ..models import PRESETS, PROFILES, ConversionResult, InvalidConfiguration, OptimizationTarget
from ..utils import TRIAL_PREFIX, WORK_PREFIX, default_work_dir, format_file_size, remove_stale_files

console = Console()

app = typer.Typer(help="Batch WebP converter with target-size quality search")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _load_config(path: Path | None) -> AppConfig:
    return load_config(path)


def _resolve_target(preset: str | None, target_kb: float | None, profile: str | None) -> tuple[OptimizationTarget, int | None]:
    width: int | None = None
    if profile:
        usage = PROFILES.get(profile)
        if usage is None:
            raise InvalidConfiguration(f"Unknown profile {profile!r}; expected one of {', '.join(sorted(PROFILES))}")
        target, width = usage.target, usage.width
    else:
        target = OptimizationTarget.preset(preset or "balanced")
    if target_kb is not None:
        target = OptimizationTarget.custom_kb(target_kb)
    return target, width


def _result_line(result: ConversionResult) -> str:
    return (
        f"{result.source_path.name} -> {result.output_path.name} "
        f"(q={result.chosen_quality}, {result.content_type.value}, "
        f"saved {result.reduction_percent}%)"
    )


@app.command()
def optimize(
    file: Path,
    preset: str = typer.Option("balanced", "--preset", help="maximum, balanced or aggressive"),
    target_kb: float | None = typer.Option(None, "--target-kb", help="Custom target size in KB"),
    width: int | None = typer.Option(None, "--width", help="Resize width in pixels"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Output .webp path"),
    config: Path | None = typer.Option(None, "--config", help="Path to config.toml"),
) -> None:
    cfg = _load_config(config)
    try:
        target, _ = _resolve_target(preset, target_kb, None)
        service = OptimizationService(cfg)
        result = service.optimize_file(file, target, width=width, output_path=output)
    except InvalidConfiguration as exc:
        console.print(f"[red]Invalid configuration[/red]: {exc}")
        raise typer.Exit(2) from exc
    except ConversionError as exc:
        console.print(f"[red]Optimization failed[/red]: {exc.code} - {exc}")
        raise typer.Exit(1) from exc
    console.print(f"[green]Success[/green]: {_result_line(result)}")
    console.print(
        f"{format_file_size(result.original_size_bytes)} -> {format_file_size(result.output_size_bytes)}, "
        f"score {result.quality_score:.2f}"
    )


@app.command()
def batch(
    path: list[Path],
    preset: str = typer.Option("balanced", "--preset", help="maximum, balanced or aggressive"),
    target_kb: float | None = typer.Option(None, "--target-kb", help="Custom target size in KB"),
    profile: str | None = typer.Option(None, "--profile", help="Usage profile (sets width and target)"),
    width: int | None = typer.Option(None, "--width", help="Resize width in pixels"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Output folder"),
    parallel: int | None = typer.Option(None, "--parallel", min=1, help="Parallel workers"),
    fixed_quality: bool = typer.Option(False, "--fixed-quality", help="Skip analysis and search; encode at the default quality"),
    config: Path | None = typer.Option(None, "--config", help="Path to config.toml"),
) -> None:
    cfg = _load_config(config)
    if fixed_quality:
        cfg.runtime.smart_mode = False
    try:
        target, profile_width = _resolve_target(preset, target_kb, profile)
        service = OptimizationService(cfg)
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
        ) as bar:
            task = bar.add_task("Optimizing", total=None)

            def _progress(index: int, total: int, result: ConversionResult) -> None:
                bar.update(task, total=total, advance=1, description=result.source_path.name)

            def _skipped(index: int, total: int, error: ConversionError) -> None:
                bar.update(task, total=total, advance=1, description=f"skipped ({error.code})")

            batch_result = service.batch_optimize(
                path,
                target,
                width=width if width is not None else profile_width,
                output_dir=output,
                progress=_progress,
                skipped=_skipped,
                parallelism=parallel,
            )
    except InvalidConfiguration as exc:
        console.print(f"[red]Invalid configuration[/red]: {exc}")
        raise typer.Exit(2) from exc

    table = Table(title="Batch summary")
    table.add_column("Source")
    table.add_column("Output")
    table.add_column("Type")
    table.add_column("Quality", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Saved", justify="right")
    table.add_column("Warnings")
    for result in batch_result.results:
        table.add_row(
            result.source_path.name,
            str(result.output_path),
            result.content_type.value,
            str(result.chosen_quality),
            format_file_size(result.output_size_bytes),
            f"{result.reduction_percent}%",
            ", ".join(result.warnings) or "-",
        )
    console.print(table)
    summary = batch_result.summary
    console.print(
        f"Processed {summary.attempted} of {summary.total} images: "
        f"{summary.successes} succeeded, {summary.failures} skipped, {summary.cancelled} cancelled. "
        f"Average quality {summary.average_quality:.0f}, saved {format_file_size(summary.bytes_saved)}."
    )
    if summary.total and not summary.successes:
        raise typer.Exit(1)


@app.command()
def presets() -> None:
    table = Table(title="Presets")
    table.add_column("Name")
    table.add_column("Label")
    table.add_column("Target", justify="right")
    for name, (size_kb, label) in PRESETS.items():
        table.add_row(name, label, f"{size_kb} KB")
    console.print(table)

    profiles = Table(title="Profiles")
    profiles.add_column("Name")
    profiles.add_column("Width", justify="right")
    profiles.add_column("Target", justify="right")
    for usage in PROFILES.values():
        profiles.add_row(usage.name, str(usage.width), format_file_size(usage.target.target_size_bytes))
    console.print(profiles)


@app.command()
def clean(
    older_than: int = typer.Option(
        0,
        "--older-than",
        min=0,
        help="Only delete leftovers older than the given minutes",
    ),
    config: Path | None = typer.Option(None, "--config", help="Path to config.toml"),
) -> None:
    cfg = _load_config(config)
    work_dir = cfg.runtime.work_dir or default_work_dir()
    removed = remove_stale_files(work_dir, (TRIAL_PREFIX, WORK_PREFIX), older_than_s=older_than * 60)
    console.print(f"Removed {removed} leftover temporary files from {work_dir}.")


@app.command("show-config")
def show_config(
    config: Path | None = typer.Option(None, "--config", help="Path to config.toml"),
) -> None:
    console.print_json(dump_config(_load_config(config)))


@app.command()
def serve(
    config: Path | None = typer.Option(None, "--config", help="Path to config.toml"),
) -> None:
    import uvicorn

    from ..api import create_app

    cfg = _load_config(config)
    try:
        api = create_app(config=cfg)
    except RuntimeError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc
    uvicorn.run(api, host=cfg.api.host, port=cfg.api.port)


if __name__ == "__main__":
    app()
