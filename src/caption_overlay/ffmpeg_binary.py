"""FFmpeg binary discovery for caption-overlay.

Lookup order for each tool:
1. Explicit path from settings
2. ``FFMPEG_PATH`` / ``FFPROBE_PATH`` environment variables
3. The imageio-ffmpeg bundle (ffmpeg only; ffprobe is looked for beside it)
4. The system ``PATH``

``prefer_system`` moves the system lookup ahead of the bundle.
"""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
from pathlib import Path
from typing import NamedTuple

from pydantic import BaseModel, Field


class FFmpegInfo(NamedTuple):
    """Information about an FFmpeg installation."""

    path: str
    version: str
    available: bool
    source: str  # "custom", "env", "imageio", "system", or "not_found"


class FFmpegConfig(BaseModel):
    """Where to look for the FFmpeg tools."""

    custom_ffmpeg_path: str | None = Field(default=None, description="Path to FFmpeg executable")
    custom_ffprobe_path: str | None = Field(default=None, description="Path to FFprobe executable")
    prefer_system: bool = Field(default=False, description="Prefer system FFmpeg over bundled")


def _existing(path: str | None) -> str | None:
    if path and Path(path).exists():
        return path
    return None


def _get_ffmpeg_from_imageio() -> str | None:
    try:
        import imageio_ffmpeg

        return imageio_ffmpeg.get_ffmpeg_exe()
    except (ImportError, RuntimeError):
        return None


def _get_ffprobe_beside(ffmpeg_path: str | None) -> str | None:
    if ffmpeg_path is None:
        return None
    names = ["ffprobe.exe", "ffprobe"] if platform.system() == "Windows" else ["ffprobe"]
    for name in names:
        candidate = Path(ffmpeg_path).parent / name
        if candidate.exists():
            return str(candidate)
    return None


def _locate(config: FFmpegConfig, tool: str) -> tuple[str | None, str]:
    custom = config.custom_ffmpeg_path if tool == "ffmpeg" else config.custom_ffprobe_path
    if _existing(custom):
        return custom, "custom"

    env_path = _existing(os.environ.get(f"{tool.upper()}_PATH"))
    if env_path:
        return env_path, "env"

    if tool == "ffmpeg":
        bundled = _get_ffmpeg_from_imageio()
    else:
        bundled = _get_ffprobe_beside(_get_ffmpeg_from_imageio())
    system = shutil.which(tool)

    ordered = [(system, "system"), (bundled, "imageio")]
    if not config.prefer_system:
        ordered.reverse()
    for path, source in ordered:
        if path:
            return path, source

    return None, "not_found"


def get_ffmpeg_path(config: FFmpegConfig | None = None) -> str | None:
    """Path to the FFmpeg executable, or None if none was found."""
    return _locate(config or FFmpegConfig(), "ffmpeg")[0]


def get_ffprobe_path(config: FFmpegConfig | None = None) -> str | None:
    """Path to the FFprobe executable, or None if none was found."""
    return _locate(config or FFmpegConfig(), "ffprobe")[0]


def _get_version(path: str) -> str | None:
    try:
        result = subprocess.run(
            [path, "-version"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
        return None

    if result.returncode != 0:
        return None
    first_line = result.stdout.split("\n")[0]
    if "version" in first_line.lower():
        parts = first_line.split("version", 1)[1].strip().split()
        if parts:
            return parts[0]
    return first_line.strip()


def get_ffmpeg_info(config: FFmpegConfig | None = None) -> FFmpegInfo:
    """Describe the FFmpeg that would be used."""
    path, source = _locate(config or FFmpegConfig(), "ffmpeg")
    if path is None:
        return FFmpegInfo(path="", version="", available=False, source="not_found")

    version = _get_version(path)
    return FFmpegInfo(
        path=path,
        version=version or "unknown",
        available=version is not None,
        source=source,
    )


def verify_ffmpeg(config: FFmpegConfig | None = None) -> tuple[bool, str]:
    """Check that both FFmpeg and FFprobe are usable.

    Returns:
        Tuple of (ok, message)
    """
    config = config or FFmpegConfig()
    info = get_ffmpeg_info(config)
    if not info.available:
        return False, "FFmpeg not found. Install FFmpeg or set FFMPEG_PATH."

    ffprobe = get_ffprobe_path(config)
    if ffprobe is None:
        return False, f"FFmpeg {info.version} found ({info.source}) but FFprobe is missing."

    return True, f"FFmpeg {info.version} ({info.source}) at {info.path}; FFprobe at {ffprobe}"
