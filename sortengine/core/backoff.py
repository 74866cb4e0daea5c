"""
Per-provider health and exponential backoff.

A provider is either HEALTHY or BACKING_OFF. The first failure starts a
backoff window of `initial` seconds; each further failure multiplies the
window (capped at `maximum`) and pushes `next_retry_at` out from now. A
success clears the state at once.

All timing is read from an injected Clock.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from ..utils.clock import Clock, get_clock

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Provider health states."""
    HEALTHY = "healthy"          # Calls allowed
    BACKING_OFF = "backing_off"  # Skipped until next_retry_at


@dataclass(frozen=True)
class BackoffPolicy:
    """Backoff and timeout settings for one provider."""
    initial: float = 1.0
    maximum: float = 60.0
    multiplier: float = 2.0
    timeout: float = 300.0

    @classmethod
    def from_config(cls, config: Optional[Dict], base: "BackoffPolicy") -> "BackoffPolicy":
        config = config or {}
        return cls(
            initial=float(config.get("initial_backoff", base.initial)),
            maximum=float(config.get("max_backoff", base.maximum)),
            multiplier=float(config.get("backoff_multiplier", base.multiplier)),
            timeout=float(config.get("timeout", base.timeout)),
        )


LOCAL_POLICY = BackoffPolicy(initial=1.0, maximum=60.0, multiplier=2.0, timeout=300.0)
CLOUD_POLICY = BackoffPolicy(initial=2.0, maximum=120.0, multiplier=2.0, timeout=30.0)


@dataclass
class ProviderHealthState:
    """Health bookkeeping for one provider."""
    provider_id: str
    status: HealthStatus = HealthStatus.HEALTHY
    consecutive_failures: int = 0
    retry_count: int = 0
    backoff_duration: float = 0.0
    next_retry_at: Optional[float] = None
    last_failure: float = 0.0
    last_success: float = 0.0
    last_error: Optional[str] = None
    total_failures: int = 0
    total_successes: int = 0

    def to_dict(self) -> Dict:
        return {
            "provider_id": self.provider_id,
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "retry_count": self.retry_count,
            "backoff_duration": self.backoff_duration,
            "next_retry_at": self.next_retry_at,
            "last_error": self.last_error,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
        }


class BackoffTracker:
    """
    Health state machine for all registered providers.

    Usage:
        tracker = BackoffTracker()
        tracker.register("ollama", LOCAL_POLICY)

        if not tracker.is_backing_off("ollama"):
            try:
                result = await provider.categorize(...)
                tracker.record_success("ollama")
            except ProviderError as e:
                tracker.record_failure("ollama", e)
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or get_clock()
        self._states: Dict[str, ProviderHealthState] = {}
        self._policies: Dict[str, BackoffPolicy] = {}
        self._lock = threading.Lock()

    def register(self, provider_id: str, policy: BackoffPolicy = LOCAL_POLICY) -> None:
        with self._lock:
            self._policies[provider_id] = policy
            self._states.setdefault(provider_id, ProviderHealthState(provider_id))

    def unregister(self, provider_id: str) -> None:
        with self._lock:
            self._policies.pop(provider_id, None)
            self._states.pop(provider_id, None)

    def policy(self, provider_id: str) -> BackoffPolicy:
        return self._policies.get(provider_id, LOCAL_POLICY)

    def _state(self, provider_id: str) -> ProviderHealthState:
        state = self._states.get(provider_id)
        if state is None:
            state = ProviderHealthState(provider_id)
            self._states[provider_id] = state
        return state

    def get_state(self, provider_id: str) -> ProviderHealthState:
        with self._lock:
            return self._state(provider_id)

    def is_backing_off(self, provider_id: str) -> bool:
        """True while the provider's retry time lies in the future."""
        with self._lock:
            state = self._states.get(provider_id)
            if state is None or state.status == HealthStatus.HEALTHY:
                return False
            return state.next_retry_at is not None and self._clock.now() < state.next_retry_at

    def record_failure(self, provider_id: str, error: Optional[Exception] = None) -> ProviderHealthState:
        """Start or extend the provider's backoff window."""
        policy = self.policy(provider_id)
        now = self._clock.now()
        with self._lock:
            state = self._state(provider_id)
            if state.status == HealthStatus.HEALTHY:
                state.status = HealthStatus.BACKING_OFF
                state.retry_count = 0
                state.backoff_duration = policy.initial
            else:
                state.retry_count += 1
                state.backoff_duration = min(state.backoff_duration * policy.multiplier, policy.maximum)
            state.next_retry_at = now + state.backoff_duration
            state.consecutive_failures += 1
            state.total_failures += 1
            state.last_failure = now
            if error is not None:
                state.last_error = str(error)

        logger.warning(
            f"Provider {provider_id} backing off for {state.backoff_duration:.1f}s "
            f"(failures: {state.consecutive_failures})"
        )
        return state

    def record_success(self, provider_id: str) -> None:
        """Clear any backoff for the provider."""
        with self._lock:
            state = self._state(provider_id)
            if state.status == HealthStatus.BACKING_OFF:
                logger.info(f"Provider {provider_id} recovered")
            state.status = HealthStatus.HEALTHY
            state.consecutive_failures = 0
            state.retry_count = 0
            state.backoff_duration = 0.0
            state.next_retry_at = None
            state.last_success = self._clock.now()
            state.total_successes += 1

    def backoff_until(self) -> Optional[float]:
        """Latest retry time over all providers still backing off."""
        with self._lock:
            times = [
                s.next_retry_at for s in self._states.values()
                if s.status == HealthStatus.BACKING_OFF and s.next_retry_at is not None
            ]
        return max(times) if times else None

    def max_retry_count(self) -> int:
        with self._lock:
            return max((s.retry_count for s in self._states.values()), default=0)

    def get_all_states(self) -> List[Dict]:
        with self._lock:
            return [s.to_dict() for s in self._states.values()]

    def reset(self, provider_id: Optional[str] = None) -> None:
        """Reset one provider or all providers to healthy."""
        with self._lock:
            ids = [provider_id] if provider_id else list(self._states)
            for pid in ids:
                self._states[pid] = ProviderHealthState(pid)
        logger.info(f"Backoff reset for {provider_id or 'all providers'}")
