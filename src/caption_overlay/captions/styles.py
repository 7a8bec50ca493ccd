"""Caption styling options.

Defines the validated, immutable set of style parameters used to lay out
caption boxes, and the conversion of user colours into FFmpeg syntax.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Pixels trimmed from each box pitch on top of the two borders, so adjacent
# boxes overlap instead of leaving a seam.
BOX_OVERLAP_COMPENSATION = 10

COLOR_PATTERNS = (
    re.compile(r"^[a-zA-Z]+$"),
    re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"),
    re.compile(r"^rgb\(\s*\d+\s*,\s*\d+\s*,\s*\d+\s*\)$"),
    re.compile(r"^rgba\(\s*\d+\s*,\s*\d+\s*,\s*\d+\s*,\s*[\d.]+\s*\)$"),
)

_RGB_RE = re.compile(r"^rgba?\(\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d+)\s*(?:,\s*([\d.]+)\s*)?\)$")


class LayoutMode(str, Enum):
    """How the caption is composited."""

    STRUCTURED = "structured"  # Coloured canvas, scaled video, text band on top
    OVERLAY = "overlay"  # Text boxes drawn straight onto the source frame


def is_valid_color(color: str) -> bool:
    """Accept named colours, hex, rgb() and rgba()."""
    color = color.strip()
    return any(pattern.match(color) for pattern in COLOR_PATTERNS)


def to_ffmpeg_color(color: str, opacity: float | None = None) -> str:
    """Convert a validated colour into FFmpeg colour syntax.

    Args:
        color: Named, ``#RGB``, ``#RRGGBB``, ``rgb()`` or ``rgba()`` colour
        opacity: Optional alpha (0.0-1.0) appended as ``@alpha``

    Returns:
        e.g. ``"black"``, ``"0xFFFBB3"``, ``"0xFF0000@0.9"``
    """
    color = color.strip()
    alpha = opacity

    rgb_match = _RGB_RE.match(color)
    if rgb_match:
        r, g, b, a = rgb_match.groups()
        channels = [min(int(value), 255) for value in (r, g, b)]
        value = "0x" + "".join(f"{channel:02X}" for channel in channels)
        if a is not None and alpha is None:
            alpha = min(float(a), 1.0)
    elif color.startswith("#"):
        hex_digits = color[1:]
        if len(hex_digits) == 3:
            hex_digits = "".join(digit * 2 for digit in hex_digits)
        value = "0x" + hex_digits.upper()
    else:
        value = color.lower()

    if alpha is not None:
        return f"{value}@{alpha:g}"
    return value


class StyleOptions(BaseModel):
    """Validated style parameters for one caption.

    Attributes:
        font_size: Glyph size in pixels
        font_color: Text colour
        font_family: Family name, also used to look up ``<family>.ttf``
        font_file: Explicit font file; ignored when missing on disk
        background_color: Fill colour of the text boxes
        box_opacity: Opacity of the text box fill
        canvas_color: Background colour around the scaled video
        border_width: Box border width; also sets how far boxes overlap
        border_color: Border colour
        text_padding: Extra padding between glyphs and box edge
        line_spacing: Extra pixels added to the box pitch
        fixed_box_height: Height reserved per line
        max_chars_per_line: Wrap width in characters
        canvas_height: Output height in structured mode
        mode: Structured canvas or plain overlay
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    font_size: int = Field(default=30, ge=8, le=72, strict=True, alias="fontSize")
    font_color: str = Field(default="black", alias="fontColor")
    font_family: str = Field(default="sans-serif", max_length=50, alias="fontFamily")
    font_file: Path | None = Field(default=None, alias="fontFile")
    background_color: str = Field(default="#fffbb3", alias="backgroundColor")
    box_opacity: float = Field(default=0.9, ge=0.0, le=1.0, alias="boxOpacity")
    canvas_color: str = Field(default="#00d9ff", alias="backgroundVideoColor")
    border_width: int = Field(default=7, ge=0, le=50, strict=True, alias="borderWidth")
    border_color: str = Field(default="black", alias="borderColor")
    text_padding: int = Field(default=0, ge=0, le=50, strict=True, alias="textPadding")
    line_spacing: int = Field(default=0, ge=0, le=200, strict=True, alias="lineSpacing")
    fixed_box_height: int = Field(default=65, ge=20, le=400, strict=True, alias="fixedBoxHeight")
    max_chars_per_line: int = Field(default=30, ge=1, le=200, strict=True, alias="maxCharsPerLine")
    canvas_height: int = Field(default=1080, ge=240, le=4320, strict=True, alias="canvasHeight")
    mode: LayoutMode = LayoutMode.STRUCTURED

    @field_validator("font_color", "background_color", "canvas_color", "border_color")
    @classmethod
    def _check_color(cls, value: str) -> str:
        if not is_valid_color(value):
            raise ValueError(
                'must be a valid color (e.g., "white", "red", "#FF0000", "rgb(255,0,0)")'
            )
        return value.strip()

    @model_validator(mode="after")
    def _check_box_pitch(self) -> "StyleOptions":
        if self.box_pitch <= 0:
            raise ValueError(
                "fixedBoxHeight must exceed twice the border width plus "
                f"{BOX_OVERLAP_COMPENSATION} pixels"
            )
        if self.font_size > self.fixed_box_height:
            raise ValueError("fontSize must not exceed fixedBoxHeight")
        return self

    @property
    def box_pitch(self) -> int:
        """Vertical distance between the tops of consecutive boxes."""
        return (
            self.fixed_box_height
            - 2 * self.border_width
            - BOX_OVERLAP_COMPENSATION
            + self.line_spacing
        )

    @property
    def text_offset(self) -> int:
        """Offset from box top to glyph top that centres the text."""
        return (self.fixed_box_height - self.font_size) // 2

    @property
    def box_padding(self) -> int:
        """Padding drawn around the glyphs by the engine."""
        return self.border_width + self.text_padding


DEFAULT_STYLE = StyleOptions()
