"""Working directories and output artifacts.

Helpers for the temp/output directories the pipeline writes into:
collision-free names, best-effort removal, listing and age-based expiry.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from caption_overlay.logging import get_logger

logger = get_logger(__name__)

VIDEO_EXTENSIONS = frozenset({".mp4", ".mov", ".avi", ".mkv", ".wmv", ".flv", ".webm"})


@dataclass
class ArtifactInfo:
    """A finished file in the output directory."""

    filename: str
    path: Path
    size: int
    modified: datetime

    @property
    def size_display(self) -> str:
        return format_bytes(self.size)


def ensure_directories(*directories: Path) -> None:
    """Create each directory (and parents) if missing."""
    for directory in directories:
        Path(directory).mkdir(parents=True, exist_ok=True)


def input_filename(request_id: str) -> str:
    return f"input_{request_id}.mp4"


def output_filename(request_id: str, timestamp_ms: int | None = None) -> str:
    """Unique output name from the request ID plus a millisecond timestamp."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"overlay_{request_id}_{timestamp_ms}.mp4"


def safe_remove(path: Path) -> bool:
    """Remove ``path`` if present; errors are logged, never raised.

    Returns:
        True if a file was removed
    """
    try:
        if path.exists():
            path.unlink()
            return True
    except OSError as e:
        logger.error(f"Error removing file {path}: {e}")
    return False


def is_video_file(filename: str | Path) -> bool:
    return Path(filename).suffix.lower() in VIDEO_EXTENSIONS


def format_bytes(size: int) -> str:
    """Human readable size, e.g. ``1.5 MB``."""
    if size == 0:
        return "0 Bytes"

    value = float(size)
    for unit in ("Bytes", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.2f}".rstrip("0").rstrip(".") + f" {unit}"
        value /= 1024
    return f"{value:.2f} GB"


def list_artifacts(directory: Path) -> list[ArtifactInfo]:
    """Finished videos in ``directory``, newest first.

    In-progress ``.part`` files are not listed.
    """
    if not directory.exists():
        return []

    artifacts = []
    for path in directory.iterdir():
        if not path.is_file() or not is_video_file(path):
            continue
        stat = path.stat()
        artifacts.append(
            ArtifactInfo(
                filename=path.name,
                path=path,
                size=stat.st_size,
                modified=datetime.fromtimestamp(stat.st_mtime),
            )
        )

    artifacts.sort(key=lambda artifact: artifact.modified, reverse=True)
    return artifacts


def cleanup_old_files(
    directory: Path,
    max_age_hours: float = 24,
    now: float | None = None,
) -> list[Path]:
    """Delete files in ``directory`` older than ``max_age_hours``.

    Returns:
        Paths that were removed
    """
    if not directory.exists():
        return []

    now = time.time() if now is None else now
    max_age_seconds = max_age_hours * 60 * 60
    removed = []

    for path in directory.iterdir():
        if not path.is_file():
            continue
        try:
            age = now - path.stat().st_mtime
        except OSError as e:
            logger.warning(f"Could not stat {path}: {e}")
            continue
        if age > max_age_seconds and safe_remove(path):
            removed.append(path)

    if removed:
        logger.info(f"Removed {len(removed)} expired file(s) from {directory}")
    return removed
