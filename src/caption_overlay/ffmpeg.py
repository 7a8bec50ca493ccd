"""FFmpeg wrapper for probing and rendering captioned videos.

The encoding policy is fixed: H.264 re-encode, audio copied untouched,
ultrafast preset, CRF 28, fast-start MP4.
"""

from __future__ import annotations

import json
import platform
import re
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from caption_overlay.errors import ConfigurationError, TranscodeFailure, ValidationError
from caption_overlay.ffmpeg_binary import FFmpegConfig, get_ffmpeg_path, get_ffprobe_path
from caption_overlay.logging import get_logger

if TYPE_CHECKING:
    from caption_overlay.video.filtergraph import FilterGraph

logger = get_logger(__name__)

# Fixed output policy, not configurable per request.
OUTPUT_ARGS = (
    "-c:v", "libx264",
    "-c:a", "copy",
    "-preset", "ultrafast",
    "-crf", "28",
    "-movflags", "+faststart",
    "-f", "mp4",
)

_OUT_TIME_RE = re.compile(r"^out_time_(?:us|ms)=(\d+)$")

ProgressCallback = Callable[[float], None]


class FFmpegNotFoundError(ConfigurationError):
    """Raised when an FFmpeg executable is not found."""


class InvalidVideoError(ValidationError):
    """Raised when the downloaded file is not a readable video."""


@dataclass
class VideoInfo:
    """Information about a video file."""

    duration: float  # Total duration in seconds (0.0 if unknown)
    width: int
    height: int
    fps: float
    video_codec: str
    audio_codec: str | None
    has_audio: bool

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0


@dataclass
class TranscodeResult:
    """Outcome of a successful render."""

    output_path: Path
    elapsed_seconds: float
    command: list[str]


def parse_probe_output(data: dict, source: str = "") -> VideoInfo:
    """Build VideoInfo from ffprobe's JSON output.

    Raises:
        InvalidVideoError: If there is no video stream
    """
    video_stream = None
    audio_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video" and video_stream is None:
            video_stream = stream
        elif stream.get("codec_type") == "audio" and audio_stream is None:
            audio_stream = stream

    if video_stream is None:
        raise InvalidVideoError(
            "Downloaded file is not a valid video",
            errors=[f"No video stream found in: {source}"],
        )

    # Container duration first, stream duration as fallback
    raw_duration = data.get("format", {}).get("duration") or video_stream.get("duration") or 0
    try:
        duration = float(raw_duration)
    except (TypeError, ValueError):
        duration = 0.0

    fps_str = video_stream.get("r_frame_rate", "0/1")
    try:
        num, den = fps_str.split("/")
        fps = float(num) / float(den) if float(den) != 0 else 0.0
    except (ValueError, ZeroDivisionError):
        fps = 0.0

    return VideoInfo(
        duration=duration,
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        fps=fps,
        video_codec=video_stream.get("codec_name", "unknown"),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
        has_audio=audio_stream is not None,
    )


class FFmpegWrapper:
    """Runs FFprobe and FFmpeg as subprocesses."""

    def __init__(self, config: FFmpegConfig | None = None, timeout: int = 1800) -> None:
        """Initialize FFmpeg wrapper.

        Args:
            config: Optional binary location overrides
            timeout: Render timeout in seconds

        Raises:
            FFmpegNotFoundError: If FFmpeg is not available
        """
        self._config = config or FFmpegConfig()
        self._ffmpeg_path = get_ffmpeg_path(self._config)
        self._ffprobe_path = get_ffprobe_path(self._config)
        self.timeout = timeout

        if self._ffmpeg_path is None:
            raise FFmpegNotFoundError(
                "FFmpeg not found. Please install FFmpeg or set FFMPEG_PATH."
            )

    @property
    def ffmpeg_path(self) -> str:
        return self._ffmpeg_path

    @property
    def ffprobe_path(self) -> str | None:
        return self._ffprobe_path

    def _get_subprocess_flags(self) -> int:
        if platform.system() == "Windows":
            return subprocess.CREATE_NO_WINDOW
        return 0

    def get_video_info(self, video_path: str | Path) -> VideoInfo:
        """Probe a video file.

        Raises:
            InvalidVideoError: If the file is missing or not a video
            FFmpegNotFoundError: If FFprobe is not available
        """
        video_path = Path(video_path)
        if not video_path.exists():
            raise InvalidVideoError(f"Video file not found: {video_path}")
        if self._ffprobe_path is None:
            raise FFmpegNotFoundError(
                "FFprobe not found. Please install FFprobe or set FFPROBE_PATH."
            )

        cmd = [
            self._ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(video_path),
        ]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=60,
                creationflags=self._get_subprocess_flags(),
            )
        except subprocess.TimeoutExpired as e:
            raise InvalidVideoError(f"FFprobe timed out reading {video_path}") from e
        except OSError as e:
            raise FFmpegNotFoundError(f"Failed to run FFprobe: {e}") from e

        if result.returncode != 0:
            raise InvalidVideoError(
                "Failed to get video info",
                errors=[result.stderr.strip() or f"ffprobe exited with {result.returncode}"],
            )

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise InvalidVideoError(f"Failed to parse video info: {e}") from e

        return parse_probe_output(data, str(video_path))

    def build_render_args(
        self,
        input_path: Path,
        output_path: Path,
        graph: "FilterGraph",
        with_progress: bool = False,
    ) -> list[str]:
        """Command line (without the executable) for one render."""
        args = ["-y", "-hide_banner"]
        if with_progress:
            args.extend(["-nostats", "-progress", "pipe:1"])
        args.extend(["-i", str(input_path)])
        args.extend(["-filter_complex", graph.render()])
        args.extend(["-map", f"[{graph.terminal}]", "-map", "0:a?"])
        args.extend(OUTPUT_ARGS)
        args.append(str(output_path))
        return args

    def _run(self, cmd: list[str], progress: ProgressCallback | None) -> tuple[int, str]:
        if progress is None:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                creationflags=self._get_subprocess_flags(),
            )
            return result.returncode, result.stderr

        # Progress lines arrive on stdout; stderr goes to a file so neither
        # pipe can fill up and stall the encoder.
        with tempfile.TemporaryFile(mode="w+") as stderr_file:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=stderr_file,
                text=True,
                creationflags=self._get_subprocess_flags(),
            )
            # The timer kills a silent process too; killing it ends the stdout loop.
            timed_out = threading.Event()

            def kill_on_timeout() -> None:
                timed_out.set()
                process.kill()

            timer = threading.Timer(self.timeout, kill_on_timeout)
            timer.daemon = True
            timer.start()
            try:
                for line in process.stdout:
                    match = _OUT_TIME_RE.match(line.strip())
                    if match:
                        try:
                            progress(int(match.group(1)) / 1_000_000)
                        except Exception as e:
                            logger.debug(f"Progress callback failed: {e}")
                process.wait()
            except BaseException:
                process.kill()
                process.wait()
                raise
            finally:
                timer.cancel()

            if timed_out.is_set():
                raise subprocess.TimeoutExpired(cmd, self.timeout)
            stderr_file.seek(0)
            return process.returncode, stderr_file.read()

    def render(
        self,
        input_path: str | Path,
        output_path: str | Path,
        graph: "FilterGraph",
        progress: ProgressCallback | None = None,
    ) -> TranscodeResult:
        """Render ``graph`` over ``input_path`` into ``output_path``.

        FFmpeg writes to ``<output>.part``; the final name appears only after
        a zero exit status.

        Args:
            input_path: Downloaded source video
            output_path: Final artifact path
            graph: Filter graph to apply
            progress: Optional callback receiving seconds encoded so far

        Raises:
            TranscodeFailure: If FFmpeg fails, times out, or cannot be started
        """
        input_path = Path(input_path)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        partial_path = output_path.with_name(output_path.name + ".part")

        args = self.build_render_args(input_path, partial_path, graph, progress is not None)
        cmd = [self._ffmpeg_path] + args
        logger.debug("Running FFmpeg", extra={"filter_complex": graph.render()})

        started = time.monotonic()
        try:
            returncode, stderr = self._run(cmd, progress)
        except subprocess.TimeoutExpired as e:
            partial_path.unlink(missing_ok=True)
            raise TranscodeFailure(f"Video processing timed out after {self.timeout} seconds") from e
        except OSError as e:
            partial_path.unlink(missing_ok=True)
            raise TranscodeFailure(f"Video processing failed: {e}") from e
        except BaseException:
            partial_path.unlink(missing_ok=True)
            raise

        if returncode != 0 or not partial_path.exists():
            partial_path.unlink(missing_ok=True)
            tail = "\n".join((stderr or "").strip().splitlines()[-5:])
            raise TranscodeFailure(
                f"Video processing failed: {tail or f'ffmpeg exited with {returncode}'}",
                engine_output=stderr or "",
            )

        partial_path.replace(output_path)
        return TranscodeResult(
            output_path=output_path,
            elapsed_seconds=time.monotonic() - started,
            command=cmd,
        )


def create_ffmpeg_wrapper(
    ffmpeg_path: str | None = None,
    ffprobe_path: str | None = None,
    timeout: int = 1800,
) -> FFmpegWrapper:
    """Factory used by the pipeline; paths usually come from settings."""
    config = FFmpegConfig(custom_ffmpeg_path=ffmpeg_path, custom_ffprobe_path=ffprobe_path)
    return FFmpegWrapper(config, timeout=timeout)
