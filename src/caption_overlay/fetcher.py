"""Resilient Google Drive downloader.

Drive often answers a direct-download request with an HTML "can't scan this
file for viruses" page instead of the bytes. This module:
- walks an ordered plan of transport configs (user agent, timeout, redirects)
- retries network-class failures with exponential backoff
- recognises interstitial pages and extracts a confirmation token or link
- falls back once to the usercontent host before giving up
- streams the binary response to disk via a ``.part`` file
"""

from __future__ import annotations

import html
import re
import socket
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Union

import requests

from caption_overlay.errors import (
    ConfirmationRequiredError,
    FetchError,
    RetryConfig,
    TransientNetworkFailure,
    calculate_delay,
)
from caption_overlay.logging import get_logger
from caption_overlay.source import AssetReference

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024

MARKUP_CONTENT_TYPES = ("text/html", "application/xhtml+xml")

# Bare token patterns, most specific first.
TOKEN_PATTERNS = (
    re.compile(r"confirm=([a-zA-Z0-9_-]+)"),
    re.compile(r"&amp;confirm=([a-zA-Z0-9_-]+)"),
    re.compile(r'"confirm":"([a-zA-Z0-9_-]+)"'),
    re.compile(r"confirm=([^&\"']+)"),
    re.compile(r'name="confirm"\s+value="([^"]+)"'),
)

# Anchors pointing at one of the two download services.
LINK_PATTERNS = (
    re.compile(r'href="(https://drive\.usercontent\.google\.com/download[^"]+)"'),
    re.compile(r'href="(https://drive\.google\.com/uc\?export=download[^"]+)"'),
)

# Text fragments of network-class failures that requests wraps in a
# generic ConnectionError.
TRANSIENT_MESSAGES = (
    "name or service not known",
    "temporary failure in name resolution",
    "nodename nor servname",
    "getaddrinfo failed",
    "failed to resolve",
    "nameresolutionerror",
    "connection reset",
    "connection aborted",
    "timed out",
)


@dataclass(frozen=True)
class TransportConfig:
    """One way of issuing the download request.

    Attributes:
        user_agent: User-Agent header value
        timeout: Connect/read timeout in seconds
        max_redirects: Redirects followed before giving up
        max_tries: Attempts with this config for network-class failures
    """

    user_agent: str
    timeout: float
    max_redirects: int
    max_tries: int = 3

    def __post_init__(self) -> None:
        if self.max_tries < 1:
            raise ValueError(f"max_tries must be at least 1, got {self.max_tries}")


@dataclass(frozen=True)
class FetchPlan:
    """Ordered transport configs, strictest first."""

    configs: tuple[TransportConfig, ...]

    def __post_init__(self) -> None:
        if not self.configs:
            raise ValueError("FetchPlan needs at least one transport config")
        object.__setattr__(self, "configs", tuple(self.configs))

    def __iter__(self):
        return iter(self.configs)

    def __len__(self) -> int:
        return len(self.configs)

    @property
    def total_attempts(self) -> int:
        """Attempts made when every try of every config fails transiently."""
        return sum(config.max_tries for config in self.configs)

    @classmethod
    def default(cls) -> "FetchPlan":
        return cls(
            configs=(
                TransportConfig(
                    user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
                    timeout=300.0,
                    max_redirects=5,
                ),
                TransportConfig(
                    user_agent=(
                        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                        "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
                    ),
                    timeout=180.0,
                    max_redirects=5,
                ),
                TransportConfig(
                    user_agent="curl/7.68.0",
                    timeout=120.0,
                    max_redirects=3,
                ),
            )
        )


@dataclass
class Success:
    """A binary response ready to be streamed.

    Owns the session it came from until :meth:`close` is called.
    """

    response: requests.Response
    content_type: str
    session: requests.Session | None = None

    def close(self) -> None:
        self.response.close()
        if self.session is not None:
            self.session.close()


@dataclass
class ConfirmationRequired:
    """An interstitial page; carries the token or URL found in it, if any."""

    token_or_url: str | None
    content_type: str = "text/html"

    @property
    def is_url(self) -> bool:
        return bool(self.token_or_url) and self.token_or_url.startswith("http")


@dataclass
class TransientFailure:
    """A network-class error worth retrying."""

    cause: Exception


@dataclass
class FatalFailure:
    """An error that ends the fetch immediately."""

    cause: Exception
    message: str = ""


FetchOutcome = Union[Success, ConfirmationRequired, TransientFailure, FatalFailure]


def is_markup_content_type(content_type: str) -> bool:
    """True when the content type describes an HTML page rather than a file."""
    content_type = content_type.lower()
    return any(markup in content_type for markup in MARKUP_CONTENT_TYPES)


def extract_confirmation_token(html_content: str) -> str | None:
    """Pull a confirmation token or a direct download link out of a page.

    Args:
        html_content: Body of the interstitial page

    Returns:
        A bare token, an absolute URL (entities decoded), or None
    """
    for pattern in TOKEN_PATTERNS:
        match = pattern.search(html_content)
        if match:
            return match.group(1)

    for pattern in LINK_PATTERNS:
        match = pattern.search(html_content)
        if match:
            return html.unescape(match.group(1))

    return None


def is_transient_error(error: BaseException) -> bool:
    """Classify a transport exception as network-class (retryable)."""
    if isinstance(error, requests.exceptions.Timeout):
        return True
    if isinstance(error, requests.exceptions.SSLError):
        return False
    if isinstance(error, requests.exceptions.ConnectionError):
        cause: BaseException | None = error
        while cause is not None:
            if isinstance(cause, (socket.gaierror, ConnectionResetError, TimeoutError)):
                return True
            cause = cause.__cause__ or cause.__context__
        message = str(error).lower()
        return any(fragment in message for fragment in TRANSIENT_MESSAGES)
    return isinstance(error, (socket.gaierror, ConnectionResetError, TimeoutError))


def describe_http_error(status_code: int) -> str:
    """User-facing message for an HTTP error status."""
    if status_code == 404:
        return (
            "Video not found. Please check if the Google Drive link is correct "
            "and the file is publicly accessible."
        )
    if status_code == 403:
        return (
            "Access denied. Please ensure the Google Drive file is publicly "
            'accessible with "Anyone with the link can view" permissions.'
        )
    return f"Failed to download video: HTTP {status_code}"


class ResilientFetcher:
    """Downloads Drive files despite interstitials and flaky networks.

    Example usage:
        fetcher = ResilientFetcher()
        fetcher.fetch(resolve_reference(url), Path("temp/input.mp4"))
    """

    def __init__(
        self,
        plan: FetchPlan | None = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
        sleep: Callable[[float], None] = time.sleep,
        config_pause: float = 2.0,
        max_bytes: int | None = None,
        retry_config: RetryConfig | None = None,
    ):
        """Initialize the fetcher.

        Args:
            plan: Transport configs to walk (defaults to ``FetchPlan.default()``)
            session_factory: Builds the HTTP session for each config
            sleep: Sleep function, injectable for tests
            config_pause: Pause before moving to the next config
            max_bytes: Abort when the download grows past this size
            retry_config: Backoff parameters (attempt counts come from the plan)
        """
        self.plan = plan or FetchPlan.default()
        self.session_factory = session_factory
        self.sleep = sleep
        self.config_pause = config_pause
        self.max_bytes = max_bytes
        self.retry_config = retry_config or RetryConfig()
        self.attempts = 0

    def _session_for(self, config: TransportConfig) -> requests.Session:
        session = self.session_factory()
        session.max_redirects = config.max_redirects
        session.headers.update({"User-Agent": config.user_agent})
        return session

    def _attempt(
        self,
        url: str,
        config: TransportConfig,
        session: requests.Session,
    ) -> FetchOutcome:
        """Issue a single request and classify what came back."""
        self.attempts += 1

        try:
            response = session.get(url, stream=True, timeout=config.timeout)
        except requests.exceptions.RequestException as e:
            if is_transient_error(e):
                return TransientFailure(cause=e)
            return FatalFailure(cause=e, message=f"Failed to download video: {e}")

        if response.status_code >= 400:
            response.close()
            error = requests.exceptions.HTTPError(
                f"HTTP {response.status_code} for {url}", response=response
            )
            return FatalFailure(cause=error, message=describe_http_error(response.status_code))

        content_type = response.headers.get("Content-Type", "")
        if not is_markup_content_type(content_type):
            return Success(response=response, content_type=content_type)

        try:
            body = response.text
        except requests.exceptions.RequestException as e:
            if is_transient_error(e):
                return TransientFailure(cause=e)
            return FatalFailure(cause=e, message=f"Failed to read confirmation page: {e}")
        finally:
            response.close()

        return ConfirmationRequired(
            token_or_url=extract_confirmation_token(body),
            content_type=content_type,
        )

    def request(self, url: str) -> Success | ConfirmationRequired:
        """Run the fetch plan against ``url``.

        Returns:
            The first binary or interstitial response

        Raises:
            FetchError: On any non-network failure
            TransientNetworkFailure: When every config and try failed on the network
        """
        last_failure: TransientFailure | None = None

        for config_index, config in enumerate(self.plan):
            if config_index > 0:
                logger.info(
                    f"Switching to fallback transport config {config_index + 1}/{len(self.plan)}",
                    extra={"user_agent": config.user_agent, "timeout": config.timeout},
                )
                self.sleep(self.config_pause)

            session: requests.Session | None = self._session_for(config)
            try:
                for attempt in range(1, config.max_tries + 1):
                    outcome = self._attempt(url, config, session)

                    if isinstance(outcome, Success):
                        # Closed by the caller once the body is streamed.
                        outcome.session, session = session, None
                        return outcome

                    if isinstance(outcome, ConfirmationRequired):
                        return outcome

                    if isinstance(outcome, FatalFailure):
                        raise FetchError(
                            outcome.message or f"Failed to download video: {outcome.cause}",
                            context={"url": url[:80]},
                        ) from outcome.cause

                    last_failure = outcome
                    logger.warning(
                        f"Network error fetching video (attempt {attempt}/{config.max_tries}): "
                        f"{outcome.cause}",
                        extra={"config": config_index + 1},
                    )
                    if attempt < config.max_tries:
                        self.sleep(calculate_delay(attempt, self.retry_config))
            finally:
                if session is not None:
                    session.close()

        # Every config made at least one attempt, so last_failure is set.
        raise TransientNetworkFailure(
            f"Download failed after {self.attempts} attempts: {last_failure.cause}. "
            "This may be a temporary network issue; please try again.",
            context={"url": url[:80]},
        ) from last_failure.cause

    def resolve(self, reference: AssetReference) -> Success:
        """Follow interstitials until a binary response is obtained.

        Raises:
            ConfirmationRequiredError: If every route ends in an interstitial
        """
        outcome = self.request(reference.primary_url)
        if isinstance(outcome, Success):
            return outcome

        logger.info("Confirmation page received, looking for a token")

        if outcome.token_or_url:
            confirmed_url = (
                outcome.token_or_url
                if outcome.is_url
                else reference.confirmed_url(outcome.token_or_url)
            )
            outcome = self.request(confirmed_url)
            if isinstance(outcome, Success):
                return outcome
            logger.info("Confirmed URL still returned a confirmation page")

        logger.info("Trying alternate download host")
        outcome = self.request(reference.alternate_url)
        if isinstance(outcome, Success):
            return outcome

        raise ConfirmationRequiredError(context={"file_id": reference.file_id})

    def fetch(self, reference: AssetReference, output_path: Path) -> Path:
        """Download ``reference`` to ``output_path``.

        The bytes land in ``<output_path>.part`` first and are renamed only
        once the stream completes, so a failed download never leaves a file
        at ``output_path``.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self.attempts = 0

        success = self.resolve(reference)
        partial_path = output_path.with_name(output_path.name + ".part")
        written = 0

        try:
            with success.response as response, open(partial_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    written += len(chunk)
                    if self.max_bytes is not None and written > self.max_bytes:
                        raise FetchError(
                            "Video is larger than the maximum allowed size",
                            context={"max_bytes": self.max_bytes},
                        )
                    f.write(chunk)
            partial_path.replace(output_path)
        except requests.exceptions.RequestException as e:
            partial_path.unlink(missing_ok=True)
            raise FetchError(f"Download failed: {e}") from e
        except OSError as e:
            partial_path.unlink(missing_ok=True)
            raise FetchError(f"Failed to write file: {e}") from e
        except BaseException:
            partial_path.unlink(missing_ok=True)
            raise
        finally:
            success.close()

        logger.info(
            f"Downloaded {written} bytes",
            extra={"file_id": reference.file_id, "attempts": self.attempts},
        )
        return output_path
