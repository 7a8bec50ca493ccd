"""Error taxonomy and retry helpers for caption-overlay.

Provides:
- A categorised exception hierarchy surfaced at the request boundary
- Exponential backoff delay calculation shared by the fetcher
- A rollback-on-error context manager used by the pipeline
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from caption_overlay.logging import get_logger, log_operation_failed

logger = get_logger(__name__)


class ErrorCategory(str, Enum):
    """Categories of errors for handling decisions."""

    TRANSIENT = "transient"  # Network, timeout - retried internally
    VALIDATION = "validation"  # Bad input - caller error
    CONFIGURATION = "configuration"  # Bad settings or missing binaries
    EXTERNAL = "external"  # Hosting provider or FFmpeg failure
    CONFLICT = "conflict"  # Same request already running
    INTERNAL = "internal"  # Bug in code


class OverlayError(Exception):
    """Base exception for caption-overlay errors.

    Attributes:
        message: Human-readable error message, safe to show to users
        category: Error category for handling
        context: Additional context information
        recoverable: Whether retrying the same call could succeed
    """

    category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        context: dict | None = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} (context: {self.context})"
        return self.message


class ValidationError(OverlayError):
    """Request or style validation failed.

    Attributes:
        errors: Field-level messages, one per problem found
    """

    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, context, recoverable=False)
        self.errors = list(errors or [])


class InvalidReferenceFormat(OverlayError):
    """The source reference does not match any accepted Drive URL shape."""

    category = ErrorCategory.VALIDATION

    def __init__(self, reference: str):
        super().__init__(
            "Invalid Google Drive URL format",
            context={"reference": reference[:80]},
        )
        self.reference = reference


class LayoutOverflowError(ValidationError):
    """The wrapped caption does not fit on the canvas."""


class ConfigurationError(OverlayError):
    """Configuration error.

    Examples: FFmpeg not installed, unreadable settings file.
    """

    category = ErrorCategory.CONFIGURATION

    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message, context, recoverable=False)


class FetchError(OverlayError):
    """Fatal failure while downloading the source video."""

    category = ErrorCategory.EXTERNAL

    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message, context, recoverable=False)


class ConfirmationRequiredError(FetchError):
    """The provider kept answering with a confirmation page."""

    DEFAULT_MESSAGE = (
        "File may be too large, requires additional verification, or access "
        "permissions are insufficient. Please try:\n"
        "1. Ensuring the file is publicly accessible\n"
        "2. Using a smaller file\n"
        '3. Sharing the file with "Anyone with the link can view" permissions'
    )

    def __init__(self, message: str | None = None, context: dict | None = None):
        super().__init__(message or self.DEFAULT_MESSAGE, context)


class TransientNetworkFailure(OverlayError):
    """Network-class failure (DNS, reset, timeout).

    Only escapes the fetcher once every transport config and retry has
    been used up.
    """

    category = ErrorCategory.TRANSIENT

    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message, context, recoverable=True)


class TranscodeFailure(OverlayError):
    """FFmpeg exited unsuccessfully.

    Attributes:
        engine_output: Captured stderr from the engine
    """

    category = ErrorCategory.EXTERNAL

    def __init__(
        self,
        message: str,
        engine_output: str = "",
        context: dict | None = None,
    ):
        super().__init__(message, context, recoverable=False)
        self.engine_output = engine_output


class DuplicateInFlight(OverlayError):
    """An identical request is already being processed."""

    category = ErrorCategory.CONFLICT

    def __init__(self, fingerprint: str):
        super().__init__(
            "An identical request is already being processed. "
            "Wait for it to finish before submitting again.",
            context={"fingerprint": fingerprint[:12]},
        )
        self.fingerprint = fingerprint


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts
        initial_delay: Delay after the first failure in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Base for exponential backoff
        jitter: Whether to add +/-25% random jitter to delays
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = False


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay before the next try.

    Args:
        attempt: Attempt that just failed (1-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds (1, 2, 4, ... with the defaults)
    """
    delay = config.initial_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_range = delay * 0.25
        delay = max(0.1, delay + random.uniform(-jitter_range, jitter_range))

    return delay


class ErrorContext:
    """Context manager that logs failures and runs a rollback.

    The rollback fires for any exception, including ``KeyboardInterrupt``,
    and its own failures are logged without replacing the original error.
    """

    def __init__(
        self,
        operation: str,
        rollback: Callable[[], None] | None = None,
        context: dict | None = None,
    ):
        self.operation = operation
        self.rollback = rollback
        self.context = context or {}
        self.error: BaseException | None = None

    def __enter__(self) -> "ErrorContext":
        logger.debug(f"Starting operation: {self.operation}", extra=self.context)
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        if exc_val is None:
            logger.debug(f"Completed operation: {self.operation}", extra=self.context)
            return False

        self.error = exc_val
        log_operation_failed(logger, self.operation, exc_val, **self.context)

        if self.rollback:
            try:
                logger.info(f"Rolling back {self.operation}", extra=self.context)
                self.rollback()
            except Exception as rollback_error:
                logger.error(
                    f"Rollback failed for {self.operation}: {rollback_error}",
                    extra=self.context,
                )

        return False


def format_error_for_display(error: BaseException) -> str:
    """Format an error message for user display.

    Args:
        error: Error to format

    Returns:
        ``[category] message`` for our errors, ``[error] Type: message`` otherwise
    """
    if isinstance(error, OverlayError):
        text = f"[{error.category.value}] {error.message}"
        if isinstance(error, ValidationError) and error.errors:
            text += "\n" + "\n".join(f"  - {item}" for item in error.errors)
        return text

    return f"[error] {type(error).__name__}: {error}"
