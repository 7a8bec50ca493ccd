"""Settings loading for caption-overlay.

Settings come from an optional JSON file and are then overridden by
environment variables, so a deployment can be tuned without touching files.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, Field, field_validator

from caption_overlay.errors import ConfigurationError

DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024

_SIZE_UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024 * 1024,
    "GB": 1024 * 1024 * 1024,
}

# Environment variable -> settings field
ENV_OVERRIDES = {
    "TEMP_DIR": "temp_dir",
    "OUTPUT_DIR": "output_dir",
    "FONT_FILE": "font_file",
    "FONTS_DIR": "fonts_dir",
    "MAX_FILE_SIZE": "max_file_size",
    "MAX_TEXT_LENGTH": "max_text_length",
    "OUTPUT_MAX_AGE_HOURS": "output_max_age_hours",
    "FFMPEG_PATH": "ffmpeg_path",
    "FFPROBE_PATH": "ffprobe_path",
}


def parse_file_size(size: str | int) -> int:
    """Parse a size such as ``"200MB"`` into bytes.

    Malformed strings fall back to 100 MB rather than failing start-up.
    """
    if isinstance(size, int):
        return size

    match = re.match(r"^(\d+)(B|KB|MB|GB)$", size.strip(), re.IGNORECASE)
    if not match:
        return DEFAULT_MAX_FILE_SIZE

    amount, unit = match.groups()
    return int(amount) * _SIZE_UNITS[unit.upper()]


class OverlaySettings(BaseModel):
    """Process-wide settings for the overlay pipeline."""

    temp_dir: Path = Path("./temp")
    output_dir: Path = Path("./output")
    # Bundled bold font shipped next to the service; optional at runtime
    font_file: Path | None = Path("./ARIALBD.TTF")
    # Directory searched for <font_family>.ttf / .otf
    fonts_dir: Path = Path("./fonts")
    max_file_size: int = Field(default=200 * 1024 * 1024, gt=0)
    max_text_length: int = Field(default=100, ge=1)
    # In-flight entries older than this are treated as orphaned
    registry_staleness_seconds: float = Field(default=30 * 60, gt=0)
    sweep_interval_seconds: float = Field(default=5 * 60, gt=0)
    output_max_age_hours: float = Field(default=24, gt=0)
    transcode_timeout: int = Field(default=30 * 60, gt=0)
    ffmpeg_path: str | None = None
    ffprobe_path: str | None = None

    @field_validator("max_file_size", mode="before")
    @classmethod
    def _parse_size(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_file_size(value)
        return value

    @field_validator("font_file", mode="before")
    @classmethod
    def _blank_font_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


def load_settings(
    config_file: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> OverlaySettings:
    """Load settings from a JSON file and environment overrides.

    Args:
        config_file: Optional JSON file with settings fields
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated settings

    Raises:
        ConfigurationError: If the file is missing, unreadable, or invalid
    """
    environ = os.environ if environ is None else environ
    data: dict[str, Any] = {}

    if config_file is not None:
        if not config_file.exists():
            raise ConfigurationError(f"Settings file not found: {config_file}")
        try:
            with open(config_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Could not read settings file {config_file}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file must contain a JSON object: {config_file}")

    for env_name, field_name in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None and value != "":
            data[field_name] = value

    try:
        return OverlaySettings(**data)
    except ValueError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
