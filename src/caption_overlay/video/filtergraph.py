"""FFmpeg filter graph synthesis.

The graph is built as plain objects (stages made of filters, joined by
bracketed labels) and serialised in one place, so user text never gets
spliced into a command string by hand.
"""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass, field
from pathlib import Path
from typing import Tuple

from caption_overlay.captions.styles import StyleOptions, to_ffmpeg_color
from caption_overlay.logging import get_logger
from caption_overlay.video.composition import CompositionPlan, LayoutBox

logger = get_logger(__name__)

SOURCE_VIDEO = "0:v"

# Characters removed from caption text before it is quoted.
_STRIPPED_TEXT_CHARS = str.maketrans("", "", "'\"\\")

# Characters that cannot appear inside a quoted option value.
_UNQUOTABLE = ("'", "\\", "\n", "\r")


def sanitize_text(text: str) -> str:
    """Strip quotes and backslashes so the text can be single-quoted safely.

    Control characters become spaces.
    """
    text = text.translate(_STRIPPED_TEXT_CHARS)
    return "".join(char if unicodedata.category(char) != "Cc" else " " for char in text).strip()


def quote(value: str) -> str:
    """Single-quote an option value for the filter parser.

    The graph parser strips the quotes before options are split on ``:``,
    so colons are backslash-escaped inside them.

    Raises:
        ValueError: If ``value`` contains characters quoting cannot protect
    """
    if any(char in value for char in _UNQUOTABLE):
        raise ValueError(f"Value cannot be quoted for FFmpeg: {value!r}")
    escaped = value.replace(":", "\\:")
    return f"'{escaped}'"


def _format_number(value: float) -> str:
    if isinstance(value, float) and not value.is_integer():
        return f"{value:.3f}".rstrip("0").rstrip(".")
    return str(int(value))


@dataclass(frozen=True)
class Filter:
    """A single filter with ordered ``key=value`` options.

    Positional options use ``None`` as the key.
    """

    name: str
    options: Tuple[Tuple[str | None, str], ...] = ()

    def render(self) -> str:
        if not self.options:
            return self.name
        rendered = ":".join(
            value if key is None else f"{key}={value}"
            for key, value in self.options
        )
        return f"{self.name}={rendered}"


@dataclass(frozen=True)
class FilterStage:
    """A chain of filters with labelled inputs and one labelled output."""

    filters: Tuple[Filter, ...]
    inputs: Tuple[str, ...] = ()
    output: str = ""

    def render(self) -> str:
        head = "".join(f"[{label}]" for label in self.inputs)
        body = ",".join(f.render() for f in self.filters)
        tail = f"[{self.output}]" if self.output else ""
        return f"{head}{body}{tail}"


@dataclass(frozen=True)
class FilterGraph:
    """Ordered stages; the last stage's output is the video to encode."""

    stages: Tuple[FilterStage, ...] = field(default_factory=tuple)

    @property
    def terminal(self) -> str:
        """Label of the final video output."""
        return self.stages[-1].output

    @property
    def stage_names(self) -> list[str]:
        return [stage.filters[0].name for stage in self.stages]

    def render(self) -> str:
        """Serialise to FFmpeg ``-filter_complex`` syntax."""
        return ";".join(stage.render() for stage in self.stages)

    def __str__(self) -> str:
        return self.render()


def usable_font_file(font_file: Path | None) -> Path | None:
    """Return ``font_file`` if it exists and can be quoted, else None."""
    if font_file is None:
        return None
    if not font_file.is_file():
        logger.warning(f"Font file not found, using engine default: {font_file}")
        return None
    if any(char in str(font_file) for char in _UNQUOTABLE):
        logger.warning(f"Font path cannot be passed to FFmpeg, using engine default: {font_file}")
        return None
    return font_file


def _background_stage(plan: CompositionPlan, style: StyleOptions) -> FilterStage:
    options: list[Tuple[str | None, str]] = [
        ("c", to_ffmpeg_color(style.canvas_color)),
        ("s", f"{plan.canvas_width}x{plan.canvas_height}"),
    ]
    if plan.duration > 0:
        options.append(("d", _format_number(plan.duration)))
    return FilterStage(filters=(Filter("color", tuple(options)),), output="bg")


def _scale_stage(plan: CompositionPlan) -> FilterStage:
    return FilterStage(
        filters=(
            Filter(
                "scale",
                (
                    (None, str(plan.scaled_width)),
                    (None, str(plan.scaled_height)),
                    ("force_original_aspect_ratio", "decrease"),
                ),
            ),
            Filter("setpts", ((None, "PTS-STARTPTS"),)),
        ),
        inputs=(SOURCE_VIDEO,),
        output="video",
    )


def _overlay_stage(plan: CompositionPlan) -> FilterStage:
    return FilterStage(
        filters=(
            Filter(
                "overlay",
                (
                    (None, str(plan.video_x)),
                    (None, str(plan.video_y)),
                    ("shortest", "1"),
                ),
            ),
        ),
        inputs=("bg", "video"),
        output="base",
    )


def drawtext_filter(box: LayoutBox, style: StyleOptions, font_file: Path | None) -> Filter:
    """Build the drawtext filter for one caption box."""
    options: list[Tuple[str | None, str]] = []
    if font_file is not None:
        options.append(("fontfile", quote(font_file.as_posix())))
    options.extend(
        [
            ("text", quote(sanitize_text(box.text))),
            ("expansion", "none"),
            ("fontsize", str(style.font_size)),
            ("fontcolor", to_ffmpeg_color(style.font_color)),
            ("x", "(w-text_w)/2"),
            ("y", str(box.text_y)),
            ("box", "1"),
            ("boxcolor", to_ffmpeg_color(style.background_color, style.box_opacity)),
            ("boxborderw", str(style.box_padding)),
            ("bordercolor", to_ffmpeg_color(style.border_color)),
        ]
    )
    return Filter("drawtext", tuple(options))


def build_filter_graph(
    plan: CompositionPlan,
    style: StyleOptions,
    font_file: Path | None = None,
) -> FilterGraph:
    """Turn a composition plan into a filter graph.

    Args:
        plan: Geometry from :func:`plan_composition`
        style: Style options the plan was computed with
        font_file: Preferred font; dropped silently if it is not on disk

    Returns:
        FilterGraph whose terminal label is the finished video
    """
    font_file = usable_font_file(font_file)
    stages: list[FilterStage] = []

    if plan.has_canvas:
        stages.extend([_background_stage(plan, style), _scale_stage(plan), _overlay_stage(plan)])
        current = "base"
    else:
        current = SOURCE_VIDEO

    for box in plan.boxes:
        if not sanitize_text(box.text):
            continue
        label = f"text{box.line_index}"
        stages.append(
            FilterStage(
                filters=(drawtext_filter(box, style, font_file),),
                inputs=(current,),
                output=label,
            )
        )
        current = label

    if not stages:
        # Overlay mode with nothing to draw: pass the source through.
        stages.append(FilterStage(filters=(Filter("null"),), inputs=(SOURCE_VIDEO,), output="out"))

    return FilterGraph(stages=tuple(stages))
