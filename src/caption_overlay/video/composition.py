"""Geometry planning for captioned videos.

Computes where everything goes before any filter is written: canvas size,
the scaled video's size and offset, and one box per caption line.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

from caption_overlay.captions.styles import LayoutMode, StyleOptions
from caption_overlay.captions.wrapping import WrappedText
from caption_overlay.errors import LayoutOverflowError, ValidationError
from caption_overlay.ffmpeg import VideoInfo

# Structured-layout constants (pixels at the canvas height)
TOP_PADDING = 140  # Band above the video that holds the caption
SIDE_PADDING = 45  # Left/right (and bottom) margin around the video
VIDEO_TOP_OFFSET = 47  # Extra gap between the caption band and the video
BOX_START_Y = 30  # Top of the first caption box


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (not banker's rounding)."""
    return int(math.floor(value + 0.5))


def even(value: int) -> int:
    """Nearest even integer at or above ``value`` (H.264 needs even sizes)."""
    return value + (value % 2)


@dataclass(frozen=True)
class LayoutBox:
    """Placement of one caption line.

    Attributes:
        line_index: Position in the wrapped text (blank lines count)
        text: Line content
        y: Top of the box
        height: Reserved box height
        text_y: Top of the glyphs
    """

    line_index: int
    text: str
    y: int
    height: int
    text_y: int

    @property
    def bottom(self) -> int:
        return self.y + self.height


@dataclass(frozen=True)
class CompositionPlan:
    """Everything the filter graph needs, in pixels and seconds."""

    mode: LayoutMode
    canvas_width: int
    canvas_height: int
    scaled_width: int
    scaled_height: int
    video_x: int
    video_y: int
    boxes: Tuple[LayoutBox, ...]
    duration: float

    @property
    def canvas_size(self) -> Tuple[int, int]:
        return (self.canvas_width, self.canvas_height)

    @property
    def has_canvas(self) -> bool:
        """Whether a background canvas and scaled video are composited."""
        return self.mode == LayoutMode.STRUCTURED


def fit_within(
    available_width: int,
    available_height: int,
    aspect_ratio: float,
) -> Tuple[int, int]:
    """Largest (width, height) with ``aspect_ratio`` inside the area.

    Args:
        available_width: Width of the area
        available_height: Height of the area
        aspect_ratio: Source width / height

    Returns:
        (width, height) with one side equal to the area's
    """
    if available_width / available_height > aspect_ratio:
        # Height is the limiting factor
        height = available_height
        width = min(round_half_up(available_height * aspect_ratio), available_width)
    else:
        width = available_width
        height = min(round_half_up(available_width / aspect_ratio), available_height)
    return width, height


def layout_boxes(
    wrapped: WrappedText,
    style: StyleOptions,
    start_y: int = BOX_START_Y,
) -> Tuple[LayoutBox, ...]:
    """One box per non-empty line, stacked with a fixed pitch.

    Blank lines keep their slot, so they show up as vertical gaps.
    """
    boxes = []
    for index, line in wrapped.non_empty:
        y = start_y + index * style.box_pitch
        boxes.append(
            LayoutBox(
                line_index=index,
                text=line,
                y=y,
                height=style.fixed_box_height,
                text_y=y + style.text_offset,
            )
        )
    return tuple(boxes)


def _check_fits(boxes: Tuple[LayoutBox, ...], canvas_height: int) -> None:
    if boxes and boxes[-1].bottom > canvas_height:
        raise LayoutOverflowError(
            "Caption does not fit on the video",
            errors=[
                f"text needs {boxes[-1].bottom}px of height but the frame is "
                f"{canvas_height}px tall; use fewer lines or a smaller box height"
            ],
        )


def plan_composition(
    video: VideoInfo,
    style: StyleOptions,
    wrapped: WrappedText,
) -> CompositionPlan:
    """Compute the full layout for one captioned video.

    Args:
        video: Probe result of the source video
        style: Validated style options
        wrapped: Wrapped caption lines

    Returns:
        CompositionPlan for the requested layout mode

    Raises:
        ValidationError: If the source has unusable dimensions
        LayoutOverflowError: If the caption boxes run off the frame
    """
    if video.width <= 0 or video.height <= 0:
        raise ValidationError(
            "Source video has invalid dimensions",
            errors=[f"width={video.width}, height={video.height}"],
        )

    boxes = layout_boxes(wrapped, style)

    if style.mode == LayoutMode.OVERLAY:
        _check_fits(boxes, video.height)
        return CompositionPlan(
            mode=LayoutMode.OVERLAY,
            canvas_width=video.width,
            canvas_height=video.height,
            scaled_width=video.width,
            scaled_height=video.height,
            video_x=0,
            video_y=0,
            boxes=boxes,
            duration=video.duration,
        )

    aspect_ratio = video.width / video.height
    canvas_height = style.canvas_height
    canvas_width = even(round_half_up(canvas_height * aspect_ratio))

    available_width = canvas_width - SIDE_PADDING * 2
    available_height = canvas_height - TOP_PADDING - SIDE_PADDING
    if available_width <= 0 or available_height <= 0:
        raise ValidationError(
            "Source aspect ratio leaves no room for the video",
            errors=[f"aspect ratio {aspect_ratio:.3f} at canvas height {canvas_height}"],
        )

    scaled_width, scaled_height = fit_within(available_width, available_height, aspect_ratio)

    video_x = round_half_up((canvas_width - scaled_width) / 2)
    video_y = min(TOP_PADDING + VIDEO_TOP_OFFSET, canvas_height - scaled_height)

    _check_fits(boxes, canvas_height)

    return CompositionPlan(
        mode=LayoutMode.STRUCTURED,
        canvas_width=canvas_width,
        canvas_height=canvas_height,
        scaled_width=scaled_width,
        scaled_height=scaled_height,
        video_x=video_x,
        video_y=video_y,
        boxes=boxes,
        duration=video.duration,
    )
