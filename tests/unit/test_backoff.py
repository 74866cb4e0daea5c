"""
Unit tests for provider backoff tracking.
"""

import pytest

from sortengine.core.backoff import (
    CLOUD_POLICY,
    LOCAL_POLICY,
    BackoffPolicy,
    BackoffTracker,
    HealthStatus,
)
from sortengine.utils.clock import ManualClock


class TestBackoffPolicy:
    """Tests for policy construction."""

    def test_defaults(self):
        assert (LOCAL_POLICY.initial, LOCAL_POLICY.maximum, LOCAL_POLICY.timeout) == (1.0, 60.0, 300.0)
        assert (CLOUD_POLICY.initial, CLOUD_POLICY.maximum, CLOUD_POLICY.timeout) == (2.0, 120.0, 30.0)

    def test_from_config_overrides(self):
        policy = BackoffPolicy.from_config({"initial_backoff": 5, "timeout": 10}, LOCAL_POLICY)
        assert policy.initial == 5.0
        assert policy.timeout == 10.0
        assert policy.maximum == 60.0


class TestBackoffTracker:
    """Tests for BackoffTracker state transitions."""

    def setup_method(self):
        self.clock = ManualClock()
        self.tracker = BackoffTracker(self.clock)
        self.tracker.register("ollama", LOCAL_POLICY)
        self.tracker.register("openai", CLOUD_POLICY)

    def test_initially_healthy(self):
        assert self.tracker.get_state("ollama").status == HealthStatus.HEALTHY
        assert self.tracker.is_backing_off("ollama") is False

    def test_first_failure_starts_initial_backoff(self):
        """First failure backs off for the initial duration with retry count 0."""
        state = self.tracker.record_failure("ollama", RuntimeError("down"))

        assert state.status == HealthStatus.BACKING_OFF
        assert state.retry_count == 0
        assert state.backoff_duration == 1.0
        assert state.next_retry_at == self.clock.now() + 1.0
        assert state.last_error == "down"
        assert self.tracker.is_backing_off("ollama") is True

    def test_backoff_doubles_until_cap(self):
        """Each further failure doubles the window up to the maximum."""
        durations = [self.tracker.record_failure("ollama").backoff_duration for _ in range(9)]
        assert durations == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0, 60.0]
        assert self.tracker.get_state("ollama").retry_count == 8

    def test_cloud_policy_durations(self):
        durations = [self.tracker.record_failure("openai").backoff_duration for _ in range(3)]
        assert durations == [2.0, 4.0, 8.0]

    def test_next_retry_strictly_increases(self):
        """Consecutive failures push the retry time further out."""
        retry_times = []
        for _ in range(3):
            retry_times.append(self.tracker.record_failure("ollama").next_retry_at)
            self.clock.advance(0.5)
        assert retry_times[0] < retry_times[1] < retry_times[2]

    def test_backoff_expires_with_time(self):
        self.tracker.record_failure("ollama")
        self.clock.advance(1.5)
        assert self.tracker.is_backing_off("ollama") is False

    def test_success_clears_backoff(self):
        self.tracker.record_failure("ollama")
        self.tracker.record_failure("ollama")
        self.tracker.record_success("ollama")

        state = self.tracker.get_state("ollama")
        assert state.status == HealthStatus.HEALTHY
        assert state.retry_count == 0
        assert state.next_retry_at is None
        assert state.total_failures == 2
        assert state.total_successes == 1

    def test_aggregate_views(self):
        self.tracker.record_failure("ollama")
        self.tracker.record_failure("openai")
        self.tracker.record_failure("openai")

        assert self.tracker.backoff_until() == pytest.approx(self.clock.now() + 4.0)
        assert self.tracker.max_retry_count() == 1
        assert {s["provider_id"] for s in self.tracker.get_all_states()} == {"ollama", "openai"}

    def test_reset(self):
        self.tracker.record_failure("ollama")
        self.tracker.reset()
        assert self.tracker.is_backing_off("ollama") is False
        assert self.tracker.backoff_until() is None

    def test_unregister(self):
        self.tracker.unregister("ollama")
        assert "ollama" not in {s["provider_id"] for s in self.tracker.get_all_states()}
