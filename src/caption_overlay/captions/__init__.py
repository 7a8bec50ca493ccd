"""Caption layout module.

Provides the style options accepted with each request and the word-wrap
engine that splits caption text into display lines.
"""

from caption_overlay.captions.styles import (
    DEFAULT_STYLE,
    LayoutMode,
    StyleOptions,
    is_valid_color,
    to_ffmpeg_color,
)
from caption_overlay.captions.wrapping import (
    DEFAULT_MAX_CHARS_PER_LINE,
    WrappedText,
    wrap_text,
)

__all__ = [
    "DEFAULT_STYLE",
    "LayoutMode",
    "StyleOptions",
    "is_valid_color",
    "to_ffmpeg_color",
    "DEFAULT_MAX_CHARS_PER_LINE",
    "WrappedText",
    "wrap_text",
]
