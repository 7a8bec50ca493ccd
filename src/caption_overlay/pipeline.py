"""Overlay pipeline orchestration.

Runs one request through resolve -> fetch -> probe -> wrap -> plan ->
transcode, guarding against duplicate concurrent requests and removing
intermediate files whenever a step fails.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from caption_overlay.captions.styles import StyleOptions
from caption_overlay.captions.wrapping import wrap_text
from caption_overlay.config import OverlaySettings
from caption_overlay.errors import DuplicateInFlight, ErrorContext
from caption_overlay.ffmpeg import FFmpegWrapper, ProgressCallback, create_ffmpeg_wrapper
from caption_overlay.fetcher import ResilientFetcher
from caption_overlay.logging import (
    get_logger,
    log_operation_complete,
    log_operation_start,
)
from caption_overlay.registry import InFlightRegistry, request_fingerprint
from caption_overlay.source import AssetReference, resolve_reference
from caption_overlay.storage import (
    ensure_directories,
    input_filename,
    output_filename,
    safe_remove,
)
from caption_overlay.validation import validate_overlay_request
from caption_overlay.video.composition import plan_composition
from caption_overlay.video.filtergraph import build_filter_graph

logger = get_logger(__name__)


class RequestState(str, Enum):
    """Lifecycle of a pipeline request."""

    ADMITTED = "admitted"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    PROBING = "probing"
    WRAPPING = "wrapping"
    PLANNING = "planning"
    TRANSCODING = "transcoding"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestState.COMPLETED, RequestState.FAILED)


@dataclass
class PipelineRequest:
    """One overlay job.

    Attributes:
        request_id: Unique ID used in file names and logs
        source: Drive link as supplied
        text: Caption text
        style: Style options
        fingerprint: Duplicate-detection identity
        state: Current lifecycle state
        history: (state, ISO timestamp) transitions so far
        reference: Parsed source, set once resolved
    """

    request_id: str
    source: str
    text: str
    style: StyleOptions
    fingerprint: str
    state: RequestState = RequestState.ADMITTED
    history: list[tuple[RequestState, str]] = field(default_factory=list)
    reference: AssetReference | None = None

    @classmethod
    def create(
        cls,
        source: str,
        text: str,
        style: StyleOptions | None = None,
        request_id: str | None = None,
    ) -> "PipelineRequest":
        request = cls(
            request_id=request_id or str(uuid.uuid4()),
            source=source,
            text=text,
            style=style or StyleOptions(),
            fingerprint=request_fingerprint(source, text),
        )
        request.history.append((RequestState.ADMITTED, datetime.now().isoformat()))
        return request

    def advance(self, state: RequestState) -> None:
        self.state = state
        self.history.append((state, datetime.now().isoformat()))

    @property
    def states(self) -> list[RequestState]:
        return [state for state, _ in self.history]


@dataclass
class ArtifactMeta:
    """A finished captioned video, ready to be served."""

    request_id: str
    output_filename: str
    artifact_path: Path
    duration: float
    elapsed_seconds: float


class OverlayPipeline:
    """Processes overlay requests end to end.

    Example usage:
        pipeline = OverlayPipeline(load_settings())
        artifact = pipeline.submit({"videoUrl": url, "text": "Hello"})
    """

    def __init__(
        self,
        settings: OverlaySettings | None = None,
        fetcher: ResilientFetcher | None = None,
        ffmpeg: FFmpegWrapper | None = None,
        registry: InFlightRegistry | None = None,
    ):
        self.settings = settings or OverlaySettings()
        self.fetcher = fetcher or ResilientFetcher(max_bytes=self.settings.max_file_size)
        self._ffmpeg = ffmpeg
        self.registry = registry or InFlightRegistry(self.settings.registry_staleness_seconds)

    @property
    def ffmpeg(self) -> FFmpegWrapper:
        """FFmpeg wrapper, created on first use so validation needs no binary."""
        if self._ffmpeg is None:
            self._ffmpeg = create_ffmpeg_wrapper(
                ffmpeg_path=self.settings.ffmpeg_path,
                ffprobe_path=self.settings.ffprobe_path,
                timeout=self.settings.transcode_timeout,
            )
        return self._ffmpeg

    def start(self) -> None:
        """Prepare directories and start the stale-entry sweeper."""
        ensure_directories(self.settings.temp_dir, self.settings.output_dir)
        self.registry.start_sweeper(self.settings.sweep_interval_seconds)

    def stop(self) -> None:
        self.registry.stop_sweeper()

    def resolve_font_file(self, style: StyleOptions) -> Path | None:
        """First font on disk: style override, settings font, then fonts dir."""
        candidates: list[Path] = []
        if style.font_file is not None:
            candidates.append(style.font_file)
        if self.settings.font_file is not None:
            candidates.append(self.settings.font_file)
        for suffix in (".ttf", ".otf", ".TTF", ".OTF"):
            candidates.append(self.settings.fonts_dir / f"{style.font_family}{suffix}")

        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return None

    def submit(
        self,
        payload: Mapping[str, Any],
        progress: ProgressCallback | None = None,
    ) -> ArtifactMeta:
        """Validate a raw payload and run it.

        Raises:
            ValidationError: Before any I/O if the payload is invalid
        """
        request = validate_overlay_request(payload, self.settings.max_text_length)
        return self.run(
            PipelineRequest.create(request.video_url, request.text, request.style),
            progress=progress,
        )

    def run(
        self,
        request: PipelineRequest,
        progress: ProgressCallback | None = None,
    ) -> ArtifactMeta:
        """Run ``request`` to completion.

        Raises:
            DuplicateInFlight: If an identical request is already running
            InvalidReferenceFormat, FetchError, ConfirmationRequiredError,
            TransientNetworkFailure, ValidationError, TranscodeFailure:
                Propagated unchanged from the failing step
        """
        token = self.registry.try_admit(request.fingerprint)
        if token is None:
            logger.warning(
                "Rejected duplicate in-flight request",
                extra={"request_id": request.request_id},
            )
            raise DuplicateInFlight(request.fingerprint)

        try:
            return self._execute(request, progress)
        finally:
            self.registry.release(request.fingerprint, token)

    def _execute(
        self,
        request: PipelineRequest,
        progress: ProgressCallback | None,
    ) -> ArtifactMeta:
        log = logger.with_context(request_id=request.request_id)
        input_path = self.settings.temp_dir / input_filename(request.request_id)
        output_path = self.settings.output_dir / output_filename(request.request_id)

        def rollback() -> None:
            request.advance(RequestState.FAILED)
            for path in (
                input_path,
                input_path.with_name(input_path.name + ".part"),
                output_path,
                output_path.with_name(output_path.name + ".part"),
            ):
                if safe_remove(path):
                    log.info(f"Removed partial file {path.name}")

        started = time.monotonic()
        log_operation_start(log, "overlay", source=request.source[:50])

        with ErrorContext("overlay", rollback=rollback, context={"request_id": request.request_id}):
            request.advance(RequestState.RESOLVING)
            request.reference = resolve_reference(request.source)

            request.advance(RequestState.FETCHING)
            log.info("Downloading video from Google Drive")
            self.fetcher.fetch(request.reference, input_path)

            request.advance(RequestState.PROBING)
            video = self.ffmpeg.get_video_info(input_path)

            request.advance(RequestState.WRAPPING)
            wrapped = wrap_text(request.text, request.style.max_chars_per_line)

            request.advance(RequestState.PLANNING)
            plan = plan_composition(video, request.style, wrapped)
            graph = build_filter_graph(plan, request.style, self.resolve_font_file(request.style))

            request.advance(RequestState.TRANSCODING)
            log.info("Adding text overlay", extra={"lines": len(plan.boxes)})
            result = self.ffmpeg.render(input_path, output_path, graph, progress=progress)

        if not safe_remove(input_path):
            log.debug("Input file already gone")

        request.advance(RequestState.COMPLETED)
        elapsed = time.monotonic() - started
        log_operation_complete(log, "overlay", duration=elapsed, output=output_path.name)

        return ArtifactMeta(
            request_id=request.request_id,
            output_filename=output_path.name,
            artifact_path=result.output_path,
            duration=video.duration,
            elapsed_seconds=elapsed,
        )
