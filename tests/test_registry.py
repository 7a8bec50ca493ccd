"""Tests for the in-flight request registry."""

import threading

from caption_overlay.registry import InFlightRegistry, request_fingerprint


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestRequestFingerprint:
    """Tests for request_fingerprint."""

    def test_deterministic(self):
        """Test equal requests share a fingerprint."""
        assert request_fingerprint("https://a", "text") == request_fingerprint("https://a", "text")

    def test_source_whitespace_ignored(self):
        """Test surrounding whitespace in the source does not matter."""
        assert request_fingerprint(" https://a ", "text") == request_fingerprint("https://a", "text")

    def test_differs_by_text(self):
        """Test different captions differ."""
        assert request_fingerprint("https://a", "one") != request_fingerprint("https://a", "two")

    def test_no_separator_collisions(self):
        """Test fields cannot bleed into each other."""
        assert request_fingerprint("a|b", "c") != request_fingerprint("a", "b|c")


class TestInFlightRegistry:
    """Tests for InFlightRegistry."""

    def test_admit_and_release(self):
        """Test a fingerprint can be admitted once until released."""
        registry = InFlightRegistry()

        assert registry.try_admit("fp")
        assert not registry.try_admit("fp")
        assert "fp" in registry
        registry.release("fp")
        assert "fp" not in registry
        assert registry.try_admit("fp")

    def test_release_with_token(self):
        """Test a matching token releases and a foreign token does not."""
        registry = InFlightRegistry()
        token = registry.try_admit("fp")

        assert not registry.release("fp", "other-token")
        assert "fp" in registry
        assert registry.release("fp", token)
        assert "fp" not in registry

    def test_late_release_after_sweep_keeps_new_admission(self):
        """Test a swept run finishing late cannot free a newer identical run."""
        clock = FakeClock()
        registry = InFlightRegistry(staleness_seconds=10, clock=clock)
        first = registry.try_admit("fp")
        clock.now += 20
        assert registry.sweep() == ["fp"]
        second = registry.try_admit("fp")
        assert second is not None and second != first

        assert not registry.release("fp", first)

        assert registry.try_admit("fp") is None
        assert registry.release("fp", second)
        assert registry.try_admit("fp") is not None

    def test_release_unknown(self):
        """Test releasing an unknown fingerprint is harmless."""
        registry = InFlightRegistry()
        registry.release("missing")

        assert len(registry) == 0

    def test_sweep_evicts_stale(self):
        """Test entries older than the window are evicted."""
        clock = FakeClock()
        registry = InFlightRegistry(staleness_seconds=60, clock=clock)
        registry.try_admit("old")
        clock.now += 45
        registry.try_admit("new")
        clock.now += 30

        evicted = registry.sweep()

        assert evicted == ["old"]
        assert "old" not in registry
        assert "new" in registry

    def test_sweep_keeps_fresh(self):
        """Test nothing is evicted inside the window."""
        clock = FakeClock()
        registry = InFlightRegistry(staleness_seconds=60, clock=clock)
        registry.try_admit("fp")
        clock.now += 60

        assert registry.sweep() == []
        assert len(registry) == 1

    def test_concurrent_admission(self):
        """Test exactly one of many concurrent admissions wins."""
        registry = InFlightRegistry()
        barrier = threading.Barrier(8)
        results = []

        def admit():
            barrier.wait()
            results.append(registry.try_admit("same"))

        threads = [threading.Thread(target=admit) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1

    def test_sweeper_thread(self):
        """Test the sweeper starts once and stops cleanly."""
        registry = InFlightRegistry()
        registry.start_sweeper(interval=60)
        first = registry._sweeper
        registry.start_sweeper(interval=60)

        assert registry._sweeper is first
        assert first.daemon

        registry.stop_sweeper()
        assert registry._sweeper is None
        assert not first.is_alive()
