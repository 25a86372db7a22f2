from __future__ import annotations

import shutil
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from ..config import AppConfig, load_config, settings_from_dict
from ..core import ConversionService
from ..detection import EXTENSION_MAP
from ..errors import ConversionError
from ..jobs import BatchOrchestrator, JobStatus
from ..models import ConversionSettings, OutputFormat, SourceAsset
from ..packaging import unique_name
from ..utils import atomic_write_bytes, generate_run_id, iter_files, slugify

console = Console()

app = typer.Typer(help="Local image format conversion toolkit")


def _load_config(path: Path | None) -> AppConfig:
    return load_config(path)


def _build_settings(
    cfg: AppConfig,
    *,
    to: str | None,
    quality: int | None,
    max_width: int | None,
    max_height: int | None,
    free_aspect: bool,
    aspect: str | None,
    crop_mode: str | None,
    rotate: float | None,
    flip_h: bool,
    flip_v: bool,
    transparent: bool,
    style: str | None,
    colors: int | None,
    icon_sizes: list[int] | None,
    icon_mode: str | None,
    images_per_page: int | None,
    strip_metadata: bool,
) -> ConversionSettings:
    overrides: dict[str, object] = {}
    if to:
        overrides["output_format"] = to
    if quality is not None:
        overrides["quality"] = quality
    if max_width is not None:
        overrides["max_width"] = max_width
    if max_height is not None:
        overrides["max_height"] = max_height
    if free_aspect:
        overrides["maintain_aspect_ratio"] = False
    crop: dict[str, object] = {}
    if aspect:
        crop["aspect_ratio"] = aspect
    if crop_mode:
        crop["mode"] = crop_mode
    if rotate:
        crop["rotation"] = rotate
    if flip_h:
        crop["flip_horizontal"] = True
    if flip_v:
        crop["flip_vertical"] = True
    if transparent:
        crop["transparent"] = True
    if crop:
        overrides["crop"] = crop
    vector: dict[str, object] = {}
    if style:
        vector["style"] = style
    if colors is not None:
        vector["colors"] = colors
    if vector:
        overrides["vector"] = vector
    icon: dict[str, object] = {}
    if icon_sizes:
        icon["sizes"] = icon_sizes
    if icon_mode:
        icon["export_mode"] = icon_mode
    if icon:
        overrides["icon"] = icon
    if images_per_page is not None:
        overrides["document"] = {"images_per_page": images_per_page}
    if strip_metadata:
        overrides["strip_metadata"] = True
    settings = settings_from_dict(overrides, base=cfg.defaults)
    settings.validate()
    return settings


def _read_asset(path: Path) -> SourceAsset:
    return SourceAsset(name=path.name, data=path.read_bytes())


TO_OPTION = typer.Option(None, "--to", "-t", help="Output format (jpeg, png, webp, svg, ico, pdf, tiff)")
QUALITY_OPTION = typer.Option(None, "--quality", "-q", min=0, max=100)
CONFIG_OPTION = typer.Option(None, "--config", help="Path to config.toml")


@app.command()
def convert(
    file: Path,
    to: str | None = TO_OPTION,
    quality: int | None = QUALITY_OPTION,
    max_width: int | None = typer.Option(None, "--max-width"),
    max_height: int | None = typer.Option(None, "--max-height"),
    free_aspect: bool = typer.Option(False, "--free-aspect", help="Clamp each axis independently"),
    aspect: str | None = typer.Option(None, "--aspect", help="Crop aspect ratio, e.g. 16:9"),
    crop_mode: str | None = typer.Option(None, "--crop-mode", help="fit, fill or extend"),
    rotate: float | None = typer.Option(None, "--rotate", help="Rotation in degrees"),
    flip_h: bool = typer.Option(False, "--flip-h"),
    flip_v: bool = typer.Option(False, "--flip-v"),
    transparent: bool = typer.Option(False, "--transparent", help="Transparent crop background"),
    style: str | None = typer.Option(None, "--style", help="Vectorization style"),
    colors: int | None = typer.Option(None, "--colors", help="Vector color count"),
    icon_size: list[int] | None = typer.Option(None, "--icon-size", help="Icon size, repeatable"),
    icon_mode: str | None = typer.Option(None, "--icon-mode", help="single or multiple"),
    strip_metadata: bool = typer.Option(False, "--strip-metadata"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Output directory"),
    config: Path | None = CONFIG_OPTION,
) -> None:
    cfg = _load_config(config)
    service = ConversionService(cfg)
    try:
        settings = _build_settings(
            cfg,
            to=to,
            quality=quality,
            max_width=max_width,
            max_height=max_height,
            free_aspect=free_aspect,
            aspect=aspect,
            crop_mode=crop_mode,
            rotate=rotate,
            flip_h=flip_h,
            flip_v=flip_v,
            transparent=transparent,
            style=style,
            colors=colors,
            icon_sizes=icon_size,
            icon_mode=icon_mode,
            images_per_page=None,
            strip_metadata=strip_metadata,
        )
        result = service.convert(_read_asset(file), settings)
    except ConversionError as exc:
        console.print(f"[red]Conversion failed[/red]: {exc.code} - {exc}")
        raise typer.Exit(1) from exc
    destination = (output or cfg.runtime.output_dir / result.run_id) / result.artifact.file_name
    atomic_write_bytes(destination, result.artifact.data)
    console.print(f"[green]Success[/green]: {file.name} -> {destination} ({result.artifact.size_bytes} bytes)")
    if result.warnings:
        console.print(f"Warnings: {', '.join(result.warnings)}")


@app.command()
def batch(
    path: list[Path],
    to: str | None = TO_OPTION,
    quality: int | None = QUALITY_OPTION,
    max_width: int | None = typer.Option(None, "--max-width"),
    max_height: int | None = typer.Option(None, "--max-height"),
    style: str | None = typer.Option(None, "--style", help="Vectorization style"),
    icon_mode: str | None = typer.Option(None, "--icon-mode", help="single or multiple"),
    images_per_page: int | None = typer.Option(None, "--images-per-page", min=1),
    strip_metadata: bool = typer.Option(False, "--strip-metadata"),
    timeout: float | None = typer.Option(None, "--timeout", min=0, help="Per-job timeout in seconds"),
    config: Path | None = CONFIG_OPTION,
) -> None:
    cfg = _load_config(config)
    service = ConversionService(cfg)
    try:
        settings = _build_settings(
            cfg,
            to=to,
            quality=quality,
            max_width=max_width,
            max_height=max_height,
            free_aspect=False,
            aspect=None,
            crop_mode=None,
            rotate=None,
            flip_h=False,
            flip_v=False,
            transparent=False,
            style=style,
            colors=None,
            icon_sizes=None,
            icon_mode=icon_mode,
            images_per_page=images_per_page,
            strip_metadata=strip_metadata,
        )
    except ConversionError as exc:
        console.print(f"[red]Invalid settings[/red]: {exc.code} - {exc}")
        raise typer.Exit(1) from exc

    orchestrator = BatchOrchestrator(service, settings, timeout_s=timeout)
    files = [item for item in iter_files(path) if item.suffix.lower() in EXTENSION_MAP]
    jobs = orchestrator.extend(_read_asset(item) for item in files)
    with Progress(
        TextColumn("{task.description}"), BarColumn(), TaskProgressColumn(), console=console
    ) as progress:
        task = progress.add_task("Converting", total=max(1, len(jobs)))
        result = orchestrator.submit_all(
            on_batch_progress=lambda fraction: progress.update(task, completed=fraction * max(1, len(jobs)))
        )

    run_dir = cfg.runtime.output_dir / generate_run_id("batch")
    table = Table(title="Batch summary")
    table.add_column("Source")
    table.add_column("Status")
    table.add_column("Output")
    table.add_column("Warnings")
    written: set[str] = set()
    for job in result.jobs:
        if job.has_standalone_result and job.artifact is not None:
            destination = run_dir / unique_name(slugify(job.artifact.file_name), written)
            written.add(destination.name)
            atomic_write_bytes(destination, job.artifact.data)
            output_label = str(destination)
        elif job.merged_into_sibling:
            output_label = "(merged)"
        elif job.status is JobStatus.ERROR:
            output_label = f"{job.error_code}: {job.error_message}"
        else:
            output_label = "-"
        table.add_row(job.asset.name, job.status.value, output_label, ", ".join(job.warnings) or "-")
    console.print(table)
    summary = result.summary
    console.print(
        f"Processed {summary.total} files: {summary.completed} completed, "
        f"{summary.failed} failed, {summary.cancelled} cancelled."
    )


@app.command()
def formats() -> None:
    table = Table(title="Output formats")
    table.add_column("Format")
    table.add_column("Extension")
    table.add_column("MIME type")
    table.add_column("Supported")
    for item in OutputFormat:
        table.add_row(item.value, item.extension, item.mime_type, "yes" if item.is_encodable else "no")
    console.print(table)


@app.command()
def clean(
    older_than: int = typer.Option(
        0,
        "--older-than",
        min=0,
        help="Delete runs older than the given days",
    ),
    keep: int = typer.Option(
        0,
        "--keep",
        min=0,
        help="Keep the most recent N runs and delete the rest",
    ),
    config: Path | None = CONFIG_OPTION,
) -> None:
    cfg = _load_config(config)
    output_dir = cfg.runtime.output_dir
    if not output_dir.exists():
        console.print("No runs directory found.")
        raise typer.Exit()
    candidates = sorted([p for p in output_dir.iterdir() if p.is_dir()], key=lambda p: p.stat().st_mtime)
    to_remove: list[Path] = []
    if keep:
        to_remove.extend(candidates[:-keep])
    if older_than:
        threshold = time.time() - older_than * 86400
        to_remove.extend([p for p in candidates if p.stat().st_mtime < threshold])
    seen: set[Path] = set()
    for path in to_remove:
        if path in seen:
            continue
        shutil.rmtree(path, ignore_errors=True)
        seen.add(path)
    console.print(f"Removed {len(seen)} run directories.")


if __name__ == "__main__":
    app()
