"""Command-line interface for caption-overlay.

Uses Typer for commands and Rich for output.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from caption_overlay import __version__
from caption_overlay.captions.styles import LayoutMode, StyleOptions
from caption_overlay.captions.wrapping import DEFAULT_MAX_CHARS_PER_LINE, wrap_text
from caption_overlay.config import OverlaySettings, load_settings
from caption_overlay.errors import OverlayError, format_error_for_display
from caption_overlay.ffmpeg import VideoInfo
from caption_overlay.ffmpeg_binary import FFmpegConfig, verify_ffmpeg
from caption_overlay.logging import LogLevel, enable_file_logging, set_verbosity
from caption_overlay.pipeline import OverlayPipeline
from caption_overlay.source import resolve_reference
from caption_overlay.storage import cleanup_old_files, list_artifacts
from caption_overlay.video.composition import plan_composition
from caption_overlay.video.filtergraph import build_filter_graph

load_dotenv()

app = typer.Typer(
    name="caption-overlay",
    help="Burn captions into Google Drive videos.",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()

_state: dict[str, Path | None] = {"config_file": None}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"caption-overlay version {__version__}")
        raise typer.Exit()


def _error_text(error: OverlayError) -> str:
    return escape(format_error_for_display(error))


def _settings() -> OverlaySettings:
    try:
        return load_settings(_state["config_file"])
    except OverlayError as e:
        console.print(f"[red]Error:[/red] {_error_text(e)}")
        raise typer.Exit(1)


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", help="Show version and exit.", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show pipeline progress logs.")] = False,
    debug: Annotated[bool, typer.Option("--debug", help="Show every log record.")] = False,
    log_file: Annotated[Optional[Path], typer.Option("--log-file", help="Also write logs to this file.")] = None,
    config: Annotated[Optional[Path], typer.Option("--config", "-c", help="JSON settings file.")] = None,
) -> None:
    """Caption Overlay - download a Drive video and burn a caption into it.

    [bold]overlay[/bold]: full pipeline (download, lay out, encode)

    [bold]wrap[/bold] / [bold]graph[/bold]: preview the layout without touching any video
    """
    if debug:
        set_verbosity(LogLevel.DEBUG)
    elif verbose:
        set_verbosity(LogLevel.VERBOSE)
    if log_file:
        enable_file_logging(log_file)
    _state["config_file"] = config


@app.command()
def overlay(
    video_url: Annotated[str, typer.Argument(help="Google Drive sharing link")],
    text: Annotated[str, typer.Argument(help="Caption text (use \\n for manual breaks)")],
    font_size: Annotated[int, typer.Option("--font-size", "-s", help="Font size in pixels")] = 30,
    font_color: Annotated[str, typer.Option("--font-color", help="Text colour")] = "black",
    box_color: Annotated[str, typer.Option("--box-color", help="Text box colour")] = "#fffbb3",
    canvas_color: Annotated[str, typer.Option("--canvas-color", help="Background colour")] = "#00d9ff",
    mode: Annotated[LayoutMode, typer.Option("--mode", "-m", help="structured or overlay")] = LayoutMode.STRUCTURED,
) -> None:
    """Download a video, burn in the caption and print where it was saved."""
    settings = _settings()
    pipeline = OverlayPipeline(settings)
    pipeline.start()

    payload = {
        "videoUrl": video_url,
        "text": text.replace("\\n", "\n"),
        "fontSize": font_size,
        "fontColor": font_color,
        "backgroundColor": box_color,
        "backgroundVideoColor": canvas_color,
        "mode": mode.value,
    }

    try:
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
            transient=True,
        ) as progress_bar:
            task = progress_bar.add_task("Processing video...", total=None)
            artifact = pipeline.submit(
                payload,
                progress=lambda seconds: progress_bar.update(
                    task, description=f"Encoding... {seconds:.1f}s"
                ),
            )
    except OverlayError as e:
        console.print(Panel(_error_text(e), title="Processing failed", border_style="red"))
        raise typer.Exit(1)
    finally:
        pipeline.stop()

    console.print(
        Panel(
            f"[green]Video processed successfully[/green]\n"
            f"File: {artifact.output_filename}\n"
            f"Path: {artifact.artifact_path}\n"
            f"Request: {artifact.request_id}\n"
            f"Took {artifact.elapsed_seconds:.1f}s",
            title="Done",
        )
    )


@app.command()
def resolve(
    video_url: Annotated[str, typer.Argument(help="Google Drive sharing link")],
) -> None:
    """Show the file ID and download URLs for a Drive link."""
    try:
        reference = resolve_reference(video_url)
    except OverlayError as e:
        console.print(f"[red]Error:[/red] {_error_text(e)}")
        raise typer.Exit(1)

    console.print(f"File ID: [bold]{reference.file_id}[/bold]")
    console.print(f"Primary:   {reference.primary_url}")
    console.print(f"Alternate: {reference.alternate_url}")


@app.command()
def wrap(
    text: Annotated[str, typer.Argument(help="Caption text (use \\n for manual breaks)")],
    max_chars: Annotated[
        int, typer.Option("--max-chars", "-n", help="Maximum characters per line")
    ] = DEFAULT_MAX_CHARS_PER_LINE,
) -> None:
    """Preview how a caption will be wrapped."""
    if max_chars < 1:
        console.print("[red]Error:[/red] --max-chars must be at least 1")
        raise typer.Exit(1)

    wrapped = wrap_text(text.replace("\\n", "\n"), max_chars)

    table = Table(title=f"Wrapped at {max_chars} characters")
    table.add_column("#", justify="right")
    table.add_column("Line")
    table.add_column("Length", justify="right")
    for index, line in enumerate(wrapped):
        table.add_row(str(index), escape(line) or "[dim](blank)[/dim]", str(len(line)))
    console.print(table)


@app.command()
def graph(
    text: Annotated[str, typer.Argument(help="Caption text (use \\n for manual breaks)")],
    width: Annotated[int, typer.Option("--width", help="Source video width")] = 1920,
    height: Annotated[int, typer.Option("--height", help="Source video height")] = 1080,
    duration: Annotated[float, typer.Option("--duration", help="Source duration in seconds")] = 10.0,
    mode: Annotated[LayoutMode, typer.Option("--mode", "-m", help="structured or overlay")] = LayoutMode.STRUCTURED,
) -> None:
    """Print the FFmpeg filter graph a caption would produce."""
    try:
        style = StyleOptions(mode=mode)
        video = VideoInfo(
            duration=duration,
            width=width,
            height=height,
            fps=0.0,
            video_codec="unknown",
            audio_codec=None,
            has_audio=False,
        )
        plan = plan_composition(video, style, wrap_text(text.replace("\\n", "\n"), style.max_chars_per_line))
    except OverlayError as e:
        console.print(f"[red]Error:[/red] {_error_text(e)}")
        raise typer.Exit(1)

    console.print(
        f"Canvas {plan.canvas_width}x{plan.canvas_height}, "
        f"video {plan.scaled_width}x{plan.scaled_height} at ({plan.video_x}, {plan.video_y}), "
        f"{len(plan.boxes)} text box(es)"
    )
    # Plain print keeps the graph copy-pasteable (no Rich markup parsing).
    font_file = OverlayPipeline(_settings()).resolve_font_file(style)
    print(build_filter_graph(plan, style, font_file).render())


@app.command()
def outputs() -> None:
    """List finished videos in the output directory."""
    settings = _settings()
    artifacts = list_artifacts(settings.output_dir)
    if not artifacts:
        console.print(f"No videos in {settings.output_dir}")
        return

    table = Table(title=str(settings.output_dir))
    table.add_column("File")
    table.add_column("Size", justify="right")
    table.add_column("Created")
    for artifact in artifacts:
        table.add_row(artifact.filename, artifact.size_display, artifact.modified.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@app.command()
def cleanup(
    max_age_hours: Annotated[
        Optional[float], typer.Option("--max-age-hours", help="Delete files older than this")
    ] = None,
) -> None:
    """Delete expired files from the temp and output directories."""
    settings = _settings()
    age = max_age_hours if max_age_hours is not None else settings.output_max_age_hours

    removed = cleanup_old_files(settings.output_dir, age) + cleanup_old_files(settings.temp_dir, age)
    console.print(f"Removed {len(removed)} file(s) older than {age:g} hours")


@app.command()
def check() -> None:
    """Check that FFmpeg and FFprobe are available."""
    settings = _settings()
    ok, message = verify_ffmpeg(
        FFmpegConfig(custom_ffmpeg_path=settings.ffmpeg_path, custom_ffprobe_path=settings.ffprobe_path)
    )
    if ok:
        console.print(f"[green]OK[/green] {message}")
    else:
        console.print(f"[red]Missing[/red] {message}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
