"""In-flight request registry.

Keeps the fingerprints of requests currently being processed so an
identical request cannot start twice. Entries are removed when a request
finishes; a background sweeper evicts entries that outlived the staleness
window (e.g. a worker thread died without releasing).
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
import uuid
from typing import Callable

from caption_overlay.logging import get_logger

logger = get_logger(__name__)


def request_fingerprint(source: str, text: str) -> str:
    """Identity used for duplicate detection.

    Only the source and the caption are included; two requests differing
    only in style share a fingerprint.
    """
    canonical = json.dumps({"source": source.strip(), "text": text}, sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class InFlightRegistry:
    """Thread-safe set of in-flight fingerprints with admission times.

    Each admission gets its own token, so a run that was swept as stale
    cannot release the entry of a later identical run.
    """

    def __init__(
        self,
        staleness_seconds: float = 30 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.staleness_seconds = staleness_seconds
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, fingerprint: object) -> bool:
        with self._lock:
            return fingerprint in self._entries

    def try_admit(self, fingerprint: str) -> str | None:
        """Register ``fingerprint``.

        Returns:
            Admission token to pass to :meth:`release`, or None if the
            fingerprint is already in flight
        """
        with self._lock:
            if fingerprint in self._entries:
                return None
            token = uuid.uuid4().hex
            self._entries[fingerprint] = (token, self._clock())
            return token

    def release(self, fingerprint: str, token: str | None = None) -> bool:
        """Forget ``fingerprint``.

        With a token, only the admission that issued it is removed.
        Releasing an unknown entry is a no-op.

        Returns:
            True if an entry was removed
        """
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return False
            if token is not None and entry[0] != token:
                logger.debug("Ignoring release from a superseded admission")
                return False
            del self._entries[fingerprint]
            return True

    def sweep(self) -> list[str]:
        """Evict entries older than the staleness window.

        Returns:
            Fingerprints that were evicted
        """
        cutoff = self._clock() - self.staleness_seconds
        with self._lock:
            stale = [fp for fp, (_, admitted) in self._entries.items() if admitted < cutoff]
            for fingerprint in stale:
                del self._entries[fingerprint]

        if stale:
            logger.warning(f"Evicted {len(stale)} stale in-flight request(s)")
        return stale

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"In-flight sweep failed: {e}")

    def start_sweeper(self, interval: float = 5 * 60) -> None:
        """Start the periodic sweep on a daemon thread (idempotent)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            args=(interval,),
            name="caption-overlay-sweeper",
            daemon=True,
        )
        self._sweeper.start()

    def stop_sweeper(self, timeout: float | None = 5.0) -> None:
        """Stop the periodic sweep and wait for the thread to exit."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None
