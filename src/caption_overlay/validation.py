"""Overlay request validation.

Checks the incoming payload before any I/O and collects every problem
into one ValidationError with field-level messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

import pydantic

from caption_overlay.captions.styles import StyleOptions
from caption_overlay.errors import ValidationError
from caption_overlay.source import is_valid_reference

DEFAULT_MAX_TEXT_LENGTH = 100

# Payload keys that are not style options
_REQUEST_KEYS = {"videoUrl", "video_url", "text"}


@dataclass(frozen=True)
class OverlayRequest:
    """A validated overlay request."""

    video_url: str
    text: str
    style: StyleOptions


def _field_name(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or "style"


def validate_overlay_request(
    body: Mapping[str, Any],
    max_text_length: int = DEFAULT_MAX_TEXT_LENGTH,
) -> OverlayRequest:
    """Validate a raw request payload.

    Args:
        body: Payload with ``videoUrl``, ``text`` and optional style fields
            (camelCase or snake_case)
        max_text_length: Longest caption accepted

    Returns:
        OverlayRequest with parsed style options

    Raises:
        ValidationError: Listing every problem found
    """
    errors: list[str] = []

    video_url = body.get("videoUrl", body.get("video_url"))
    if not video_url:
        errors.append("videoUrl is required")
    elif not isinstance(video_url, str):
        errors.append("videoUrl must be a string")
    elif not is_valid_reference(video_url):
        errors.append("videoUrl must be a valid Google Drive URL")

    text = body.get("text")
    if not text:
        errors.append("text is required")
    elif not isinstance(text, str):
        errors.append("text must be a string")
    elif len(text) > max_text_length:
        errors.append(f"text must be {max_text_length} characters or less")

    style_fields = {key: value for key, value in body.items() if key not in _REQUEST_KEYS}
    style: StyleOptions | None = None
    try:
        style = StyleOptions(**style_fields)
    except pydantic.ValidationError as e:
        for detail in e.errors():
            errors.append(f"{_field_name(detail['loc'])}: {detail['msg']}")

    if errors or style is None:
        raise ValidationError("Validation failed", errors=errors)

    return OverlayRequest(video_url=video_url.strip(), text=text, style=style)
