"""
Tiered Orchestrator

Runs a recorded step through the strategy tiers chosen by the decision
engine, one tier at a time, until one succeeds. Every attempt is kept in the
result, including timeouts and provider exceptions.

When a healer is attached and every tier fails, the orchestrator asks it
for a replacement locator; an applied healing re-runs the tiers once with
the healed copy of the step and reports the real outcome back to the healer.
"""

import asyncio
import inspect
import time
from dataclasses import replace
from threading import Lock
from typing import Optional, Callable, Iterable, Mapping, Union, Tuple, Dict, Any

from stepheal.agent.decision_engine import DecisionEngine
from stepheal.automation.tiers import (
    StrategyTier,
    StrategyProvider,
    StrategyOutcome,
    TierConfig,
    TierOverride,
    TierAttemptResult,
    OrchestrationResult,
    RunSummary,
    DEFAULT_TIER_CONFIG,
    build_tier_config,
)
from stepheal.models import ActionDescriptor, PageContext, PageSnapshot
from stepheal.self_healing.healer import AIHealer
from stepheal.utils.config import Config
from stepheal.utils.logger import get_logger, step_context
from stepheal.utils.retry_handler import with_timeout

logger = get_logger(__name__)

DEFAULT_INTER_STEP_PAUSE = 0.1  # seconds
DEFAULT_NAVIGATION_KINDS = ('open', 'navigate')


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class TieredOrchestrator:
    """
    Executes steps tier by tier.

    Tier configuration is the only mutable shared state; it is replaced as a
    whole under a lock by update_tier_config and read as a snapshot per step.
    """

    def __init__(
        self,
        providers: Union[Mapping[StrategyTier, StrategyProvider], Iterable[StrategyProvider]],
        tiers: Optional[Iterable[TierOverride]] = None,
        decision_engine: Optional[DecisionEngine] = None,
        protocol_available: Callable[[], bool] = lambda: False,
        healer: Optional[AIHealer] = None,
        snapshot_source: Optional[Callable[[], Any]] = None,
        page_context_source: Optional[Callable[[], Any]] = None,
        event_store=None,
        inter_step_pause: float = DEFAULT_INTER_STEP_PAUSE,
        navigation_kinds: Tuple[str, ...] = DEFAULT_NAVIGATION_KINDS,
    ):
        """
        Args:
            providers: Strategy providers, keyed by tier or carrying a ``tier``
            tiers: Partial tier overrides merged onto the defaults
            decision_engine: Tier selector (a default engine is created)
            protocol_available: Reports whether protocol-level access works now
            healer: Optional AIHealer consulted when every tier fails
            snapshot_source: Returns (or awaits to) the PageSnapshot for healing
            page_context_source: Returns (or awaits to) the current PageContext
            event_store: Run telemetry sink; defaults to the healer's store
            inter_step_pause: Seconds to wait between steps in execute_all
            navigation_kinds: Step kinds that succeed without any tier
        """
        if isinstance(providers, Mapping):
            self.providers: Dict[StrategyTier, StrategyProvider] = dict(providers)
        else:
            self.providers = {p.tier: p for p in providers}

        self._lock = Lock()
        self._tiers: Tuple[TierConfig, ...] = build_tier_config(tiers, base=DEFAULT_TIER_CONFIG)
        self.decision_engine = decision_engine if decision_engine is not None else DecisionEngine(self._tiers)
        self._protocol_available = protocol_available
        self.healer = healer
        self._snapshot_source = snapshot_source
        self._page_context_source = page_context_source
        self.event_store = event_store if event_store is not None else getattr(healer, 'event_store', None)
        self.inter_step_pause = inter_step_pause
        self.navigation_kinds = tuple(k.lower() for k in navigation_kinds)

    @classmethod
    def from_config(
        cls,
        config: Config,
        providers: Union[Mapping[StrategyTier, StrategyProvider], Iterable[StrategyProvider]],
        healer: Optional[AIHealer] = None,
        **kwargs
    ) -> 'TieredOrchestrator':
        """
        Build an orchestrator from a loaded Config.

        Tier overrides and orchestrator settings come from the config. When
        healing is enabled and no healer is given, an AIHealer is built from
        the ``healing`` section.

        Args:
            config: Loaded configuration (see load_config)
            providers: Strategy providers, keyed by tier or carrying a ``tier``
            healer: Healer to use instead of one built from the config
            **kwargs: Remaining constructor arguments (snapshot_source, ...)
        """
        if healer is None and config.healing.enabled:
            healer = AIHealer(config.healing)
        return cls(
            providers,
            tiers=config.tiers,
            healer=healer,
            inter_step_pause=config.orchestrator.inter_step_pause,
            navigation_kinds=config.orchestrator.navigation_kinds,
            **kwargs
        )

    @property
    def tier_config(self) -> Tuple[TierConfig, ...]:
        with self._lock:
            return self._tiers

    def update_tier_config(self, updates: Iterable[TierOverride]) -> Tuple[TierConfig, ...]:
        """
        Merge tier updates onto the current configuration and re-sort.

        Raises:
            ConfigurationError: the merged configuration is invalid; the
                current configuration is kept
        """
        with self._lock:
            self._tiers = build_tier_config(updates, base=self._tiers)
            logger.info(
                "Tier order: " + " -> ".join(f"{t.tier.value}({t.priority})" for t in self._tiers)
            )
            return self._tiers

    async def execute_step(
        self,
        action: ActionDescriptor,
        failed_tiers: Iterable[StrategyTier] = ()
    ) -> OrchestrationResult:
        """
        Execute one step.

        Args:
            action: Recorded step
            failed_tiers: Tiers already known to have failed for this step

        Returns:
            OrchestrationResult; ``used_tier`` is None for navigation steps
            and StrategyTier.EXHAUSTED when nothing worked
        """
        with step_context(action.step_key):
            return await self._execute(action, failed_tiers)

    async def _execute(
        self,
        action: ActionDescriptor,
        failed_tiers: Iterable[StrategyTier]
    ) -> OrchestrationResult:
        start_time = time.monotonic()

        if action.is_navigation(self.navigation_kinds):
            logger.debug(f"Navigation step {action.step_key}, no tiers needed")
            return OrchestrationResult(
                success=True,
                used_tier=None,
                attempts=(),
                total_duration=time.monotonic() - start_time,
                step_key=action.step_key,
            )

        result = await self._run_tiers(action, failed_tiers)
        if result.success or self.healer is None:
            return replace(result, total_duration=time.monotonic() - start_time)

        return await self._heal_and_retry(action, result, start_time)

    async def _run_tiers(
        self,
        action: ActionDescriptor,
        failed_tiers: Iterable[StrategyTier]
    ) -> OrchestrationResult:
        start_time = time.monotonic()
        tiers = self.tier_config
        by_tier = {t.tier: t for t in tiers}

        context = self.decision_engine.build_context(action, self._check_protocol(), failed_tiers)
        sequence = self.decision_engine.select_sequence(context, tiers)

        attempts = []
        for tier in sequence:
            config = by_tier[tier]
            if not config.enabled:
                logger.debug(f"Tier {tier.value} disabled, skipping")
                continue

            attempt = await self._attempt(tier, config.timeout, action)
            attempts.append(attempt)

            if attempt.success:
                logger.info(f"  ✓ {tier.value} ({attempt.duration * 1000:.0f}ms)")
                return OrchestrationResult(
                    success=True,
                    used_tier=tier,
                    attempts=tuple(attempts),
                    total_duration=time.monotonic() - start_time,
                    step_key=action.step_key,
                    element=attempt.element,
                )

            logger.info(f"  ✗ {tier.value}: {attempt.error}")

        return OrchestrationResult(
            success=False,
            used_tier=StrategyTier.EXHAUSTED,
            attempts=tuple(attempts),
            total_duration=time.monotonic() - start_time,
            step_key=action.step_key,
            error=f"All {len(attempts)} tier attempts failed" if attempts else "No tier available for step",
        )

    async def _attempt(self, tier: StrategyTier, timeout: float, action: ActionDescriptor) -> TierAttemptResult:
        provider = self.providers.get(tier)
        if provider is None:
            return TierAttemptResult(tier=tier, success=False, duration=0.0,
                                     error="No provider registered", healed=action.was_healed)

        start_time = time.monotonic()
        try:
            outcome = StrategyOutcome.coerce(
                await with_timeout(provider.execute, timeout, action, label=f"{tier.value} tier")
            )
        except asyncio.TimeoutError:
            outcome = StrategyOutcome(success=False, error=f"Timed out after {timeout:.1f}s")
        except Exception as e:
            outcome = StrategyOutcome(success=False, error=str(e) or type(e).__name__)

        return TierAttemptResult(
            tier=tier,
            success=outcome.success,
            duration=time.monotonic() - start_time,
            error=None if outcome.success else (outcome.error or "Element not resolved"),
            confidence=outcome.confidence,
            element=outcome.element,
            healed=action.was_healed,
        )

    def _check_protocol(self) -> bool:
        try:
            return bool(self._protocol_available())
        except Exception as e:
            logger.warning(f"Protocol availability check failed: {e}")
            return False

    async def _capture_snapshot(self) -> Optional[PageSnapshot]:
        if self._snapshot_source is None:
            return None
        try:
            return await _maybe_await(self._snapshot_source())
        except Exception as e:
            logger.warning(f"Snapshot capture failed: {e}")
            return None

    async def _page_context(self) -> PageContext:
        if self._page_context_source is None:
            return PageContext(url="")
        try:
            return await _maybe_await(self._page_context_source())
        except Exception as e:
            logger.warning(f"Page context unavailable: {e}")
            return PageContext(url="")

    async def _heal_and_retry(
        self,
        action: ActionDescriptor,
        failed: OrchestrationResult,
        start_time: float
    ) -> OrchestrationResult:
        snapshot = await self._capture_snapshot()
        page = await self._page_context()
        request = self.healer.build_request(action, snapshot, page, [a.tier.value for a in failed.attempts])
        healing = await self.healer.heal(request)

        if not healing.success or not healing.action.applies_locator:
            if healing.success:
                logger.info(
                    f"Healing suggestion for {action.step_key} not applied "
                    f"({healing.action.value}): {healing.suggested_locator}"
                )
            return replace(failed, healing=healing, total_duration=time.monotonic() - start_time)

        healed_action = action.with_healed_locator(
            healing.suggested_locator,
            provider=healing.provider.value,
            confidence=healing.confidence,
            action=healing.action.value,
        )
        logger.info(f"Retrying {action.step_key} with healed locator {healing.suggested_locator}")
        retry = await self._run_tiers(healed_action, ())

        self.healer.record_result(
            healed_action,
            healing.suggested_locator,
            retry.success,
            page.url,
            provider=healing.provider.value,
            confidence=healing.confidence,
        )

        return OrchestrationResult(
            success=retry.success,
            used_tier=retry.used_tier,
            attempts=failed.attempts + retry.attempts,
            total_duration=time.monotonic() - start_time,
            step_key=action.step_key,
            error=retry.error,
            element=retry.element,
            healing=healing,
            healed_action=healed_action,
        )

    async def execute_all(self, actions: Iterable[ActionDescriptor]) -> RunSummary:
        """
        Execute steps sequentially; a failed step does not stop the run.

        Returns:
            RunSummary with one result per step, in order
        """
        actions = list(actions)
        summary = RunSummary()
        start_time = time.monotonic()

        if self.healer is not None:
            self.healer.reset_session()

        logger.info("=" * 60)
        logger.info(f"Replaying {len(actions)} steps")
        logger.info("=" * 60)

        for index, action in enumerate(actions):
            if index > 0 and self.inter_step_pause > 0:
                await asyncio.sleep(self.inter_step_pause)

            logger.info(f"→ Step {index + 1}/{len(actions)}: {action.kind} '{action.label}'")
            result = await self.execute_step(action)
            summary.results.append(result)

            if result.success:
                tier = result.used_tier.value if result.used_tier else "navigation"
                logger.info(f"✓ Step completed: {action.step_key} via {tier}")
            else:
                logger.warning(f"✗ Step failed: {action.step_key} ({result.error})")

        elapsed = time.monotonic() - start_time
        logger.info(f"Run finished: {summary.passed}/{summary.total} passed, {summary.failed} failed in {elapsed:.1f}s")

        if self.event_store is not None:
            self.event_store.record_run(
                total=summary.total,
                passed=summary.passed,
                failed=summary.failed,
                healed=summary.healed,
                duration=elapsed,
            )
        return summary
