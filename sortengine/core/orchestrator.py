"""
Provider orchestrator - cascading categorization with health routing.

Coordinates the flow: Preference order -> Availability/Backoff filter ->
Provider call (timeout race, one retry) -> Escalation -> Result.

Providers are tried one at a time. A low-confidence answer is kept as a
fallback while the cascade escalates to the next provider; the first
answer at or above the escalation threshold wins. Failing providers are
put into exponential backoff and skipped until their retry time.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Optional, Tuple

from .backoff import CLOUD_POLICY, LOCAL_POLICY, BackoffPolicy, BackoffTracker
from .errors import AllProvidersFailed, ProviderError, ProviderUnavailable, ProviderTimeout, SortEngineError
from ..providers.base import (
    CategorizationProvider,
    CategorizationRequest,
    CategorizationResult,
    ProviderTier,
)
from ..utils.clock import Clock, get_clock
from ..utils.logger import logger


class RoutingMode(Enum):
    """Overall routing capability."""
    FULL = "full"          # At least one provider available
    DEGRADED = "degraded"  # None available, cascade limited to local providers
    OFFLINE = "offline"    # None available, degraded mode disabled


class ProviderPreference(Enum):
    """User preference profiles; each orders provider tiers."""
    AUTOMATIC = "automatic"
    LOCAL_ONLY = "local_only"
    PREFER_LOCAL_SERVER = "prefer_local_server"
    CLOUD = "cloud"


TIER_ORDER: Dict[ProviderPreference, Tuple[ProviderTier, ...]] = {
    ProviderPreference.AUTOMATIC: (
        ProviderTier.ON_DEVICE, ProviderTier.LOCAL_SERVER, ProviderTier.CLOUD, ProviderTier.HEURISTIC,
    ),
    ProviderPreference.LOCAL_ONLY: (ProviderTier.ON_DEVICE, ProviderTier.HEURISTIC),
    ProviderPreference.PREFER_LOCAL_SERVER: (
        ProviderTier.LOCAL_SERVER, ProviderTier.ON_DEVICE, ProviderTier.HEURISTIC,
    ),
    ProviderPreference.CLOUD: (
        ProviderTier.CLOUD, ProviderTier.LOCAL_SERVER, ProviderTier.ON_DEVICE, ProviderTier.HEURISTIC,
    ),
}


@dataclass
class RoutingState:
    """Snapshot of routing health."""
    mode: RoutingMode = RoutingMode.FULL
    available_providers: List[str] = field(default_factory=list)
    last_error: Optional[str] = None
    backoff_until: Optional[float] = None
    retry_count: int = 0
    updated_at: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "mode": self.mode.value,
            "available_providers": list(self.available_providers),
            "last_error": self.last_error,
            "backoff_until": self.backoff_until,
            "retry_count": self.retry_count,
            "updated_at": self.updated_at,
        }


class ProviderOrchestrator:
    """
    Routes categorization requests over registered providers.

    Usage:
        orchestrator = ProviderOrchestrator(config)
        orchestrator.register(OllamaProvider())
        orchestrator.register(HeuristicProvider())
        await orchestrator.start()
        result = await orchestrator.categorize(request)
        await orchestrator.stop()
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        preference: ProviderPreference = ProviderPreference.AUTOMATIC,
        clock: Optional[Clock] = None,
        tracker: Optional[BackoffTracker] = None,
    ):
        """
        Args:
            config: Orchestrator section with:
                - escalation_threshold: Minimum confidence to stop the cascade (default: 0.5)
                - escalation_enabled: Override the per-preference default
                - provider_timeout: Per-call timeout for every provider (default: policy timeout)
                - retry_delay: Seconds before the single retry (default: 0.5)
                - health_check_interval: Seconds between health probes (default: 30)
                - availability_cache_seconds: Probe result lifetime (default: 60)
                - enable_degraded_mode: Fall back to local providers when none is available
            preference: Initial provider preference
            clock: Time source for backoff and probe caching
            tracker: Backoff tracker (created if omitted)
        """
        config = config or {}
        self._clock = clock or get_clock()
        self.tracker = tracker or BackoffTracker(self._clock)

        self.escalation_threshold = float(config.get("escalation_threshold", 0.5))
        self._escalation_override: Optional[bool] = config.get("escalation_enabled")
        self.provider_timeout: Optional[float] = config.get("provider_timeout")
        self.retry_delay = float(config.get("retry_delay", 0.5))
        self.health_check_interval = float(config.get("health_check_interval", 30.0))
        self.availability_cache_seconds = float(config.get("availability_cache_seconds", 60.0))
        self.degraded_mode_enabled = bool(config.get("enable_degraded_mode", True))
        self.preference = preference

        self._providers: Dict[str, CategorizationProvider] = {}
        self._registration: Dict[str, int] = {}
        self._next_registration = 0
        self._availability: Dict[str, Tuple[bool, float]] = {}
        self._health_tasks: Dict[str, asyncio.Task] = {}
        self._running = False
        self._forced_mode: Optional[RoutingMode] = None
        self._state = RoutingState(updated_at=self._clock.now())
        self._lock = asyncio.Lock()

        self._total_categorizations = 0
        self._escalation_count = 0
        self._processing_times: Deque[float] = deque(maxlen=100)

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #

    def register(self, provider: CategorizationProvider, policy: Optional[BackoffPolicy] = None) -> None:
        """Register a provider. Re-registering an id replaces it in place."""
        provider_id = provider.get_name()
        if policy is None:
            policy = CLOUD_POLICY if provider.is_cloud else LOCAL_POLICY
        self._providers[provider_id] = provider
        if provider_id not in self._registration:
            self._registration[provider_id] = self._next_registration
            self._next_registration += 1
        self._availability.pop(provider_id, None)
        self.tracker.register(provider_id, policy)
        logger.info(f"Registered provider {provider_id} ({provider.tier.value})")
        if self._running:
            self._start_health_task(provider_id)

    def unregister(self, provider_id: str) -> bool:
        if provider_id not in self._providers:
            return False
        del self._providers[provider_id]
        self._registration.pop(provider_id, None)
        self._availability.pop(provider_id, None)
        self.tracker.unregister(provider_id)
        task = self._health_tasks.pop(provider_id, None)
        if task is not None:
            task.cancel()
        logger.info(f"Unregistered provider {provider_id}")
        return True

    @property
    def providers(self) -> List[CategorizationProvider]:
        return [self._providers[pid] for pid in self._registered_ids()]

    def _registered_ids(self) -> List[str]:
        return sorted(self._providers, key=lambda pid: self._registration[pid])

    # ------------------------------------------------------------------ #
    # Health checks
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Start one periodic health-check task per provider."""
        if self._running:
            return
        self._running = True
        for provider_id in self._registered_ids():
            self._start_health_task(provider_id)
        logger.info(f"Orchestrator started with {len(self._providers)} providers")

    async def stop(self) -> None:
        """Cancel all health-check tasks and wait for them to finish."""
        self._running = False
        tasks = list(self._health_tasks.values())
        self._health_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Orchestrator stopped")

    def _start_health_task(self, provider_id: str) -> None:
        existing = self._health_tasks.pop(provider_id, None)
        if existing is not None:
            existing.cancel()
        self._health_tasks[provider_id] = asyncio.create_task(self._health_loop(provider_id))

    async def _health_loop(self, provider_id: str) -> None:
        try:
            while True:
                await asyncio.sleep(self.health_check_interval)
                await self.check_provider_health(provider_id)
        except asyncio.CancelledError:
            logger.debug(f"Health loop for {provider_id} cancelled")
            raise

    async def check_provider_health(self, provider_id: str) -> bool:
        """
        Probe one provider now.

        A failed probe starts or extends the provider's backoff; a passing
        probe clears it.
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            return False

        available = await self._probe(provider)
        async with self._lock:
            self._availability[provider_id] = (available, self._clock.now())
            if available:
                self.tracker.record_success(provider_id)
            else:
                self.tracker.record_failure(
                    provider_id, ProviderUnavailable(provider_id, "health check failed")
                )
        await self._update_routing_state()
        return available

    async def check_health(self) -> RoutingState:
        """Probe every registered provider and return the new routing state."""
        for provider_id in self._registered_ids():
            await self.check_provider_health(provider_id)
        return self.get_routing_state()

    async def _probe(self, provider: CategorizationProvider) -> bool:
        timeout = self._timeout_for(provider.get_name())
        try:
            return bool(await asyncio.wait_for(provider.is_available(), timeout))
        except asyncio.TimeoutError:
            logger.warning(f"Availability probe for {provider.get_name()} timed out")
            return False
        except Exception as e:
            logger.warning(f"Availability probe for {provider.get_name()} failed: {e}")
            return False

    async def _is_available(self, provider: CategorizationProvider) -> bool:
        """Availability probe, cached for `availability_cache_seconds`."""
        provider_id = provider.get_name()
        cached = self._availability.get(provider_id)
        now = self._clock.now()
        if cached is not None and now - cached[1] < self.availability_cache_seconds:
            return cached[0]
        available = await self._probe(provider)
        async with self._lock:
            self._availability[provider_id] = (available, self._clock.now())
        return available

    # ------------------------------------------------------------------ #
    # Routing state
    # ------------------------------------------------------------------ #

    async def _update_routing_state(self) -> RoutingState:
        available = []
        for provider_id in self._registered_ids():
            provider = self._providers.get(provider_id)
            if provider is None or self.tracker.is_backing_off(provider_id):
                continue
            if await self._is_available(provider):
                available.append(provider_id)

        async with self._lock:
            if self._forced_mode is not None:
                mode = self._forced_mode
            elif available:
                mode = RoutingMode.FULL
            elif self.degraded_mode_enabled:
                mode = RoutingMode.DEGRADED
            else:
                mode = RoutingMode.OFFLINE

            if mode != self._state.mode:
                logger.warning(f"Routing mode changed: {self._state.mode.value} -> {mode.value}")

            self._state = RoutingState(
                mode=mode,
                available_providers=available,
                last_error=self._state.last_error,
                backoff_until=self.tracker.backoff_until(),
                retry_count=self.tracker.max_retry_count(),
                updated_at=self._clock.now(),
            )
            return self._state

    def get_routing_state(self) -> RoutingState:
        return self._state

    def set_preference(self, preference: ProviderPreference) -> None:
        self.preference = preference
        logger.info(f"Provider preference set to {preference.value}")

    def set_escalation_threshold(self, threshold: float) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Escalation threshold must be within [0, 1], got {threshold}")
        self.escalation_threshold = threshold

    def set_escalation_enabled(self, enabled: Optional[bool]) -> None:
        """Override escalation; None restores the per-preference default."""
        self._escalation_override = enabled

    @property
    def escalation_enabled(self) -> bool:
        if self._escalation_override is not None:
            return self._escalation_override
        return self.preference == ProviderPreference.AUTOMATIC

    async def set_degraded_mode(self, enabled: bool) -> RoutingState:
        self.degraded_mode_enabled = enabled
        return await self._update_routing_state()

    def force_mode(self, mode: Optional[RoutingMode]) -> None:
        """Pin the routing mode (None returns to computed routing)."""
        self._forced_mode = mode
        if mode is not None:
            self._state.mode = mode
        logger.info(f"Routing mode forced to {mode.value if mode else 'automatic'}")

    def get_provider_order(self) -> List[str]:
        """Provider ids in cascade order for the current preference."""
        tiers = TIER_ORDER[self.preference]
        ordered = [
            p for p in self._providers.values() if p.tier in tiers
        ]
        ordered.sort(key=lambda p: (
            tiers.index(p.tier), p.priority, self._registration[p.get_name()],
        ))
        return [p.get_name() for p in ordered]

    def _timeout_for(self, provider_id: str) -> float:
        if self.provider_timeout is not None:
            return float(self.provider_timeout)
        return self.tracker.policy(provider_id).timeout

    # ------------------------------------------------------------------ #
    # Cascade
    # ------------------------------------------------------------------ #

    async def _candidates(self) -> List[CategorizationProvider]:
        state = await self._update_routing_state()
        if state.mode == RoutingMode.OFFLINE:
            return []

        candidates = []
        for provider_id in self.get_provider_order():
            provider = self._providers[provider_id]
            if self.tracker.is_backing_off(provider_id):
                logger.debug(f"Skipping {provider_id}: backing off")
                continue
            if state.mode == RoutingMode.DEGRADED:
                if not provider.is_cloud:
                    candidates.append(provider)
                continue
            if provider_id in state.available_providers:
                candidates.append(provider)
        return candidates

    async def _call_with_timeout(
        self, provider: CategorizationProvider, request: CategorizationRequest
    ) -> Optional[CategorizationResult]:
        """Race the provider call against a timer; the loser is cancelled."""
        timeout = self._timeout_for(provider.get_name())
        call = asyncio.ensure_future(provider.categorize_request(request))
        timer = asyncio.ensure_future(asyncio.sleep(timeout))
        try:
            done, _ = await asyncio.wait({call, timer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (call, timer):
                if not task.done():
                    task.cancel()
        if call in done:
            return call.result()
        raise ProviderTimeout(provider.get_name(), timeout)

    async def _call_once(
        self, provider: CategorizationProvider, request: CategorizationRequest
    ) -> Optional[CategorizationResult]:
        """One provider call; unexpected exceptions count as the provider being unavailable."""
        try:
            return await self._call_with_timeout(provider, request)
        except SortEngineError:
            raise
        except Exception as e:
            logger.exception(f"Provider {provider.get_name()} raised an unexpected error")
            raise ProviderUnavailable(provider.get_name(), f"{type(e).__name__}: {e}") from e

    async def _attempt(
        self, provider: CategorizationProvider, request: CategorizationRequest
    ) -> Optional[CategorizationResult]:
        """Call a provider with one retry; a second failure starts backoff."""
        provider_id = provider.get_name()
        try:
            return await self._call_once(provider, request)
        except ProviderError as e:
            logger.warning(f"Provider {provider_id} failed ({e}); retrying in {self.retry_delay}s")

        await asyncio.sleep(self.retry_delay)
        try:
            return await self._call_once(provider, request)
        except ProviderError as e:
            async with self._lock:
                self.tracker.record_failure(provider_id, e)
                self._availability.pop(provider_id, None)
                self._state.last_error = str(e)
            raise

    async def categorize(self, request: CategorizationRequest) -> CategorizationResult:
        """
        Categorize a file through the provider cascade.

        Returns:
            The first result at or above the escalation threshold (tagged with
            the provider it escalated from), else the best low-confidence result

        Raises:
            AllProvidersFailed: No provider produced any result
        """
        start_time = time.perf_counter()
        escalate = self.escalation_enabled
        candidates = await self._candidates()

        best: Optional[CategorizationResult] = None
        escalated_from: Optional[str] = None
        last_error: Optional[Exception] = None
        attempted: List[str] = []
        chosen: Optional[CategorizationResult] = None

        for provider in candidates:
            provider_id = provider.get_name()
            attempted.append(provider_id)
            try:
                result = await self._attempt(provider, request)
            except ProviderError as e:
                last_error = e
                continue
            except SortEngineError as e:
                # Data-integrity problems are not retried and do not back off
                logger.error(f"Provider {provider_id} rejected request: {e}")
                last_error = e
                continue

            if result is None:
                logger.debug(f"Provider {provider_id} had no opinion")
                continue

            async with self._lock:
                self.tracker.record_success(provider_id)

            if escalate and result.confidence < self.escalation_threshold:
                logger.info(
                    f"Escalating past {provider_id} "
                    f"(confidence {result.confidence:.2f} < {self.escalation_threshold:.2f})"
                )
                if best is None or result.confidence > best.confidence:
                    best = result
                escalated_from = provider_id
                continue

            chosen = result.with_escalation(escalated_from)
            break

        if chosen is None and best is not None:
            chosen = best.with_escalation(None)

        if chosen is None:
            if last_error is None:
                mode = self._state.mode.value
                last_error = ProviderUnavailable("orchestrator", f"no provider available (mode: {mode})")
            async with self._lock:
                self._state.last_error = str(last_error)
            logger.error(f"Categorization failed for {request.signature.filename}: {last_error}")
            raise AllProvidersFailed(last_error, attempted)

        async with self._lock:
            self._total_categorizations += 1
            if chosen.escalated_from is not None:
                self._escalation_count += 1
            self._processing_times.append(time.perf_counter() - start_time)

        logger.info(
            f"Categorized {request.signature.filename} -> {chosen.category_path} "
            f"via {chosen.provider} ({chosen.confidence:.2f})"
        )
        return chosen

    def get_statistics(self) -> Dict:
        total = self._total_categorizations
        times = list(self._processing_times)
        return {
            "total_categorizations": total,
            "escalation_count": self._escalation_count,
            "escalation_rate": self._escalation_count / total if total else 0.0,
            "average_processing_time": sum(times) / len(times) if times else 0.0,
            "available_providers": list(self._state.available_providers),
            "mode": self._state.mode.value,
            "preference": self.preference.value,
            "providers": self.tracker.get_all_states(),
        }
