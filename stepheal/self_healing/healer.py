"""
Main self-healing orchestrator.
Proposes a replacement locator when every strategy tier failed for a step.
"""
import time
import uuid
from typing import Optional, List, Iterable, Dict, Any

from stepheal.errors import ProviderError
from stepheal.models import ActionDescriptor, PageContext, PageSnapshot
from stepheal.self_healing.cache import HealingCache, HealingCacheEntry, CacheKey, normalize_url_pattern, hash_locator
from stepheal.self_healing.config import HealingConfig
from stepheal.self_healing.events import HealingEventStore
from stepheal.self_healing.guards import RemoteCallGuard
from stepheal.self_healing.local_analyzer import LocalHeuristicAnalyzer
from stepheal.self_healing.providers import (
    HealingProvider,
    CacheProvider,
    LocalHeuristicProvider,
    RemoteVisionProvider,
    cache_key_for,
)
from stepheal.self_healing.types import (
    HealingAction,
    HealingRequest,
    HealingResponse,
    ProviderType,
)
from stepheal.self_healing.vision_locator import RemoteVisionClient
from stepheal.utils.logger import get_logger

logger = get_logger(__name__)


def _new_session_id() -> str:
    return f"heal_{uuid.uuid4().hex[:12]}"


class AIHealer:
    """
    Self-healing for recorded steps.

    When a step's locator no longer resolves, the healer:
    1. Checks the healing cache for a known-good replacement
    2. Asks the offline analyzer to match the snapshot's elements
    3. Asks the remote vision model (if enabled and admitted)
    4. Maps the winning confidence to an action and records telemetry

    ``heal`` never raises; a provider that raises is logged and skipped.
    """

    def __init__(
        self,
        config: Optional[HealingConfig] = None,
        cache: Optional[HealingCache] = None,
        local_analyzer=None,
        remote_client: Optional[RemoteVisionClient] = None,
        guard: Optional[RemoteCallGuard] = None,
        event_store: Optional[HealingEventStore] = None,
        providers: Optional[Iterable[HealingProvider]] = None
    ):
        """
        Args:
            config: Healing configuration (defaults apply)
            cache: Healing cache shared with record_result
            local_analyzer: Offline analyzer; defaults to LocalHeuristicAnalyzer
            remote_client: Remote vision client
            guard: Rate limiter + circuit breaker for remote calls
            event_store: Telemetry sink
            providers: Explicit provider chain, overriding the default
                cache -> local-heuristic -> remote-vision chain
        """
        self.config = config if config is not None else HealingConfig()
        self.policy = self.config.confidence
        self.cache = cache if cache is not None else HealingCache(self.config.cache)
        self.guard = guard if guard is not None else RemoteCallGuard(self.config.rate_limit)
        if remote_client is None:
            remote_client = RemoteVisionClient(self.config.remote_vision, enabled=self.config.remote_enabled)
        self.remote_client = remote_client
        self.event_store = event_store if event_store is not None else HealingEventStore()

        if local_analyzer is None:
            local_analyzer = LocalHeuristicAnalyzer(self.config.local_analyzer)

        if providers is None:
            providers = [
                CacheProvider(self.cache, enabled=self.config.cache_enabled),
                LocalHeuristicProvider(
                    local_analyzer,
                    timeout=self.config.local_analyzer.timeout,
                    enabled=self.config.local_enabled,
                ),
                RemoteVisionProvider(self.remote_client, self.guard, enabled=self.config.remote_enabled),
            ]
        self.providers: List[HealingProvider] = list(providers)
        self.session_id = _new_session_id()

    def build_request(
        self,
        action: ActionDescriptor,
        snapshot: Optional[PageSnapshot],
        page: PageContext,
        attempted_tiers: Iterable[str] = ()
    ) -> HealingRequest:
        """Create a request tagged with this healer's session id."""
        return HealingRequest(
            action=action,
            snapshot=snapshot,
            page=page,
            session_id=self.session_id,
            attempted_tiers=tuple(attempted_tiers),
        )

    async def heal(self, request: HealingRequest) -> HealingResponse:
        """
        Find a replacement locator for a failing step.

        Args:
            request: Failing step, page snapshot and page identity

        Returns:
            HealingResponse; on total failure success=False with
            action NO_ACTION
        """
        start_time = time.monotonic()
        step_key = request.action.step_key
        cost_before = self.remote_client.total_cost

        if not self.config.enabled:
            response = self._failure("Self-healing is disabled")
            return self._finish(request, response, start_time, cost_before)

        if not self.guard.try_acquire_step(step_key):
            logger.info(f"Healing limit reached for step {step_key}")
            response = self._failure(
                f"Healing attempt limit ({self.guard.config.max_attempts_per_step}) reached for step"
            )
            return self._finish(request, response, start_time, cost_before)

        logger.info("=" * 60)
        logger.info("SELF-HEALING TRIGGERED")
        logger.info(f"Step: {step_key} ({request.action.kind} '{request.action.label}')")
        logger.info(f"Locator: {request.action.primary_locator or '(none)'}")
        logger.info("=" * 60)

        errors = []
        response = None
        for provider in self.providers:
            name = provider.provider_type.value
            if not provider.is_available():
                logger.debug(f"Provider {name} unavailable, skipping")
                continue

            try:
                result = await provider.attempt(request)
            except ProviderError as e:
                logger.warning(f"Provider {name} failed: {e}")
                errors.append(f"{name}: {e}")
                continue
            except Exception as e:
                logger.exception(f"Provider {name} raised unexpectedly")
                errors.append(f"{name}: {e!r}")
                continue

            if result is None:
                continue
            if not result.found or not result.suggested_locator:
                logger.info(f"Provider {name}: nothing found ({result.reasoning})")
                continue

            action = self.policy.decide(result.confidence)
            if action is HealingAction.NO_ACTION:
                logger.info(
                    f"Provider {name}: {result.suggested_locator} confidence "
                    f"{result.confidence:.2f} below minimum {self.policy.minimum:.2f}"
                )
                continue

            response = HealingResponse(
                success=True,
                provider=provider.provider_type,
                confidence=result.confidence,
                reasoning=result.reasoning,
                action=action,
                suggested_locator=result.suggested_locator,
                alternatives=list(result.alternatives),
                element_bounds=result.element_bounds,
            )
            logger.info(
                f"✓ Healed via {name}: {result.suggested_locator} "
                f"(confidence {result.confidence:.0%}, {action.value})"
            )
            if provider.provider_type is ProviderType.REMOTE_VISION:
                self._remember(request, response)
            break

        if response is None:
            logger.warning(f"✗ All healing providers failed for step {step_key}")
            response = self._failure("All healing providers failed", "; ".join(errors) or None)

        return self._finish(request, response, start_time, cost_before)

    def _failure(self, reasoning: str, error: Optional[str] = None) -> HealingResponse:
        return HealingResponse(
            success=False,
            provider=ProviderType.FALLBACK,
            confidence=0.0,
            reasoning=reasoning,
            action=HealingAction.NO_ACTION,
            error=error,
        )

    def _finish(
        self,
        request: HealingRequest,
        response: HealingResponse,
        start_time: float,
        cost_before: float
    ) -> HealingResponse:
        response.duration = time.monotonic() - start_time
        self.event_store.record_healing(request, response, cost=self.remote_client.total_cost - cost_before)
        return response

    def _remember(self, request: HealingRequest, response: HealingResponse) -> None:
        key = cache_key_for(request)
        self.cache.set(HealingCacheEntry(
            page_url_pattern=key.page_url_pattern,
            step_kind=key.step_kind,
            step_label=key.step_label,
            locator_hash=key.locator_hash,
            original_locator=request.action.primary_locator,
            healed_locator=response.suggested_locator,
            confidence=response.confidence,
            provider=response.provider.value,
        ))

    def record_result(
        self,
        action: ActionDescriptor,
        healed_locator: str,
        success: bool,
        page_url: str,
        provider: Optional[str] = None,
        confidence: Optional[float] = None
    ) -> bool:
        """
        Feed back whether an applied healing actually worked.

        Successes of a locator the cache already holds bump its success
        count; a verified locator the cache does not hold yet is stored.
        Failures bump the failure count and never delete the entry.

        Args:
            action: The step as recorded, or the healed copy of it
            healed_locator: Locator that was tried
            success: Whether the step succeeded with it
            page_url: URL of the page the step ran on
            provider: Provider that proposed the locator (for new entries)
            confidence: Its confidence (for new entries)

        Returns:
            True if a cache entry was updated or created
        """
        original = action.healing_annotations[-1].original_locator if action.was_healed else action.primary_locator
        key = CacheKey(normalize_url_pattern(page_url), action.kind, action.label, hash_locator(original))
        entry = self.cache.peek(key)

        if entry is not None and entry.healed_locator == healed_locator:
            if success:
                return self.cache.record_success(key)
            return self.cache.record_failure(key)

        if not success:
            return False

        stored = self.cache.set(HealingCacheEntry(
            page_url_pattern=key.page_url_pattern,
            step_kind=key.step_kind,
            step_label=key.step_label,
            locator_hash=key.locator_hash,
            original_locator=original,
            healed_locator=healed_locator,
            confidence=confidence if confidence is not None else 0.0,
            provider=provider or ProviderType.FALLBACK.value,
        ))
        return stored is not None

    def reset_session(self) -> str:
        """Start a new run: clear per-step counters, issue a new session id."""
        self.guard.reset_steps()
        self.session_id = _new_session_id()
        logger.info(f"New healing session {self.session_id}")
        return self.session_id

    def reset_circuit_breaker(self) -> None:
        self.guard.reset_breaker()
        logger.info("Circuit breaker reset")

    def set_remote_api_key(self, api_key: str) -> None:
        """Set the remote vision key; a non-empty key enables remote vision."""
        self.remote_client.set_api_key(api_key)
        self.remote_client.set_enabled(bool(api_key))
        for provider in self.providers:
            if provider.provider_type is ProviderType.REMOTE_VISION:
                provider.enabled = bool(api_key)

    def session_state(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'providers': {p.provider_type.value: p.is_available() for p in self.providers},
            'guard': self.guard.state(),
            'remote_requests': self.remote_client.request_count,
            'remote_cost': self.remote_client.total_cost,
            'cache': self.cache.stats(),
        }

    async def close(self) -> None:
        await self.remote_client.close()
