"""
Healing providers.

All providers share one interface so the healer can fold over them in
priority order:

    cache -> local-heuristic -> remote-vision

``attempt`` returns an AnalysisResult when the provider looked, or None when
it deliberately skipped (disabled, rate-limited, circuit open). It may raise;
the healer logs the exception and moves on.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from stepheal.errors import ProviderError
from stepheal.self_healing.cache import HealingCache, CacheKey, normalize_url_pattern, hash_locator
from stepheal.self_healing.guards import RemoteCallGuard
from stepheal.self_healing.local_analyzer import LocalHeuristicAnalyzer
from stepheal.self_healing.types import (
    AnalysisContext,
    AnalysisResult,
    HealingRequest,
    ProviderType,
)
from stepheal.self_healing.vision_locator import RemoteVisionClient
from stepheal.utils.logger import get_logger
from stepheal.utils.retry_handler import with_timeout

logger = get_logger(__name__)


def cache_key_for(request: HealingRequest) -> CacheKey:
    action = request.action
    return CacheKey(
        page_url_pattern=normalize_url_pattern(request.page.url),
        step_kind=action.kind,
        step_label=action.label,
        locator_hash=hash_locator(action.primary_locator),
    )


def analysis_context_for(request: HealingRequest) -> AnalysisContext:
    action = request.action
    hints = action.hints
    extra = tuple(h for h in (hints.aria_label, hints.text, hints.placeholder, hints.name, hints.test_id) if h)
    return AnalysisContext(
        target_label=action.label,
        element_kind=action.kind,
        expected_bounds=action.bounds,
        original_locator=action.primary_locator,
        hints=extra,
    )


class HealingProvider(ABC):
    """One way of proposing a replacement locator."""

    provider_type: ProviderType

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def is_available(self) -> bool:
        return self.enabled

    @abstractmethod
    async def attempt(self, request: HealingRequest) -> Optional[AnalysisResult]:
        """Look for a replacement locator for the failing step."""


class CacheProvider(HealingProvider):
    """Serves previously successful healings."""

    provider_type = ProviderType.CACHE

    def __init__(self, cache: HealingCache, enabled: bool = True):
        super().__init__(enabled)
        self.cache = cache

    def is_available(self) -> bool:
        return self.enabled and self.cache.config.enabled

    async def attempt(self, request: HealingRequest) -> Optional[AnalysisResult]:
        key = cache_key_for(request)
        entry = self.cache.get(*key)
        if entry is None:
            return AnalysisResult(found=False, reasoning="No reusable cached healing")

        uses = entry.success_count + entry.failure_count
        return AnalysisResult(
            found=True,
            confidence=entry.confidence,
            suggested_locator=entry.healed_locator,
            reasoning=(
                f"Cached healing from {entry.provider} "
                f"({entry.success_rate:.0%} success over {uses} uses)"
            ),
        )


class LocalHeuristicProvider(HealingProvider):
    """Wraps an offline analyzer under a timeout."""

    provider_type = ProviderType.LOCAL_HEURISTIC

    def __init__(self, analyzer=None, timeout: float = 2.0, enabled: bool = True):
        """
        Args:
            analyzer: Object with is_available() and async analyze(snapshot, context);
                defaults to LocalHeuristicAnalyzer
            timeout: Seconds allowed per analysis
            enabled: Provider toggle
        """
        super().__init__(enabled)
        self.analyzer = analyzer if analyzer is not None else LocalHeuristicAnalyzer()
        self.timeout = timeout

    def is_available(self) -> bool:
        return self.enabled and self.analyzer.is_available()

    async def attempt(self, request: HealingRequest) -> Optional[AnalysisResult]:
        context = analysis_context_for(request)
        return await with_timeout(
            self.analyzer.analyze, self.timeout, request.snapshot, context, label="local-heuristic analysis"
        )


class RemoteVisionProvider(HealingProvider):
    """
    Remote vision, admitted by the rate limiter and circuit breaker.

    Requests without a screenshot are skipped before admission. Every
    dispatched call reports back to the breaker: an answer (found or not)
    counts as success; an exception, timeout or cancellation as failure.
    """

    provider_type = ProviderType.REMOTE_VISION

    def __init__(self, client: RemoteVisionClient, guard: RemoteCallGuard, enabled: bool = True):
        super().__init__(enabled)
        self.client = client
        self.guard = guard

    def is_available(self) -> bool:
        return self.enabled and self.client.is_available()

    @property
    def deadline(self) -> float:
        """Overall bound for one call including its retries."""
        cfg = self.client.config
        return cfg.timeout * (cfg.retry_count + 1) + cfg.retry_delay * cfg.retry_count

    async def attempt(self, request: HealingRequest) -> Optional[AnalysisResult]:
        snapshot = request.snapshot
        if snapshot is None or not snapshot.image_data:
            logger.info(f"Skipping remote vision for {request.action.step_key}: no screenshot")
            return None

        admission = self.guard.try_acquire_remote()
        if not admission.admitted:
            logger.info(f"Skipping remote vision for {request.action.step_key}: {admission.value}")
            return None

        context = analysis_context_for(request)
        try:
            result = await with_timeout(
                self.client.analyze, self.deadline, snapshot, context, label="remote vision"
            )
        except asyncio.TimeoutError:
            self.guard.record_failure()
            raise ProviderError(f"Remote vision timed out after {self.deadline:.0f}s")
        except BaseException:
            # cancellation included, so a claimed half-open trial is released
            self.guard.record_failure()
            raise

        self.guard.record_success()
        return result
