"""
Unit tests for TieredOrchestrator.

Strategy providers are fakes that record the order they were called in.
"""

import asyncio
from unittest.mock import Mock

import pytest

from stepheal.automation.orchestrator import TieredOrchestrator
from stepheal.automation.tiers import StrategyTier, StrategyProvider, StrategyOutcome
from stepheal.errors import ConfigurationError
from stepheal.models import ActionDescriptor, LocatorHints, PageContext
from stepheal.self_healing.cache import CacheKey, normalize_url_pattern, hash_locator
from stepheal.self_healing.events import HealingEventStore
from stepheal.self_healing.healer import AIHealer
from stepheal.self_healing.providers import HealingProvider
from stepheal.self_healing.types import AnalysisResult, HealingAction, ProviderType
from stepheal.utils.config import Config

PAGE_URL = 'https://app.example.com/settings'


class FakeProvider(StrategyProvider):
    """Strategy provider driven by a callable."""

    def __init__(self, tier, log, behaviour=True):
        self.tier = tier
        self.log = log
        self.behaviour = behaviour
        self.seen = []

    async def execute(self, action):
        self.log.append(self.tier)
        self.seen.append(action)
        if callable(self.behaviour):
            value = self.behaviour(action)
            if asyncio.iscoroutine(value):
                value = await value
            return value
        return self.behaviour


class SuggestingProvider(HealingProvider):
    """Healing provider that always proposes the same locator."""

    provider_type = ProviderType.LOCAL_HEURISTIC

    def __init__(self, locator, confidence):
        super().__init__()
        self.locator = locator
        self.confidence = confidence

    async def attempt(self, request):
        return AnalysisResult(found=True, confidence=self.confidence, suggested_locator=self.locator)


def make_providers(log, **behaviours):
    """One FakeProvider per configurable tier; failing by default."""
    return [
        FakeProvider(tier, log, behaviours.get(tier.value, False))
        for tier in StrategyTier.configurable()
    ]


def click(label='Save', **hints):
    hints.setdefault('selector', '#save')
    return ActionDescriptor(kind='click', label=label, hints=LocatorHints(**hints))


class TestExecuteStep:
    """Tier selection and fallthrough."""

    @pytest.fixture
    def log(self):
        return []

    @pytest.mark.asyncio
    async def test_first_success_stops(self, log):
        orchestrator = TieredOrchestrator(make_providers(log, native_query=True))
        result = await orchestrator.execute_step(click())

        assert result.success is True
        assert result.used_tier is StrategyTier.NATIVE_QUERY
        assert log == [StrategyTier.NATIVE_QUERY]
        assert result.attempt_count == 1

    @pytest.mark.asyncio
    async def test_falls_through_to_vision(self, log):
        orchestrator = TieredOrchestrator(make_providers(log, vision_ocr=StrategyOutcome(success=True, confidence=0.9)))
        result = await orchestrator.execute_step(click())

        assert result.used_tier is StrategyTier.VISION_OCR
        assert log == [StrategyTier.NATIVE_QUERY, StrategyTier.VISION_OCR]
        assert result.attempts[0].success is False
        assert result.attempts[1].confidence == 0.9

    @pytest.mark.asyncio
    async def test_protocol_tier_needs_access_and_stable_hint(self, log):
        orchestrator = TieredOrchestrator(make_providers(log), protocol_available=lambda: True)

        await orchestrator.execute_step(click(test_id='save-button'))
        assert StrategyTier.PROTOCOL_LEVEL in log

        log.clear()
        await orchestrator.execute_step(click(element_id='a1b2c3d4e5f6'))
        assert StrategyTier.PROTOCOL_LEVEL not in log

    @pytest.mark.asyncio
    async def test_exhausted(self, log):
        orchestrator = TieredOrchestrator(make_providers(log))
        result = await orchestrator.execute_step(click())

        assert result.success is False
        assert result.used_tier is StrategyTier.EXHAUSTED
        assert result.exhausted
        assert len(result.attempts) == 2
        assert all(a.error for a in result.attempts)

    @pytest.mark.asyncio
    async def test_manual_coordinate_runs_last(self, log):
        orchestrator = TieredOrchestrator(make_providers(log, manual_coordinate=True))
        action = ActionDescriptor(kind='click', label='Save', hints=LocatorHints(selector='#save'), manual_override=(40, 60))

        result = await orchestrator.execute_step(action)

        assert result.used_tier is StrategyTier.MANUAL_COORDINATE
        assert log[-1] is StrategyTier.MANUAL_COORDINATE
        assert log.index(StrategyTier.NATIVE_QUERY) < log.index(StrategyTier.MANUAL_COORDINATE)

    @pytest.mark.asyncio
    async def test_previously_failed_tiers_skipped(self, log):
        orchestrator = TieredOrchestrator(make_providers(log, vision_ocr=True))
        result = await orchestrator.execute_step(click(), failed_tiers=[StrategyTier.NATIVE_QUERY])

        assert log == [StrategyTier.VISION_OCR]
        assert result.success is True

    @pytest.mark.asyncio
    async def test_timeout_becomes_failed_attempt(self, log):
        async def slow(action):
            await asyncio.sleep(1)
            return True

        orchestrator = TieredOrchestrator(
            make_providers(log, native_query=slow, vision_ocr=True),
            tiers=[{'tier': 'native_query', 'timeout': 0.05}],
        )
        result = await orchestrator.execute_step(click())

        assert result.used_tier is StrategyTier.VISION_OCR
        assert 'Timed out' in result.attempts[0].error

    @pytest.mark.asyncio
    async def test_provider_exception_becomes_failed_attempt(self, log):
        def boom(action):
            raise RuntimeError("element detached")

        orchestrator = TieredOrchestrator(make_providers(log, native_query=boom, vision_ocr=True))
        result = await orchestrator.execute_step(click())

        assert result.success is True
        assert result.attempts[0].error == "element detached"

    @pytest.mark.asyncio
    async def test_dict_outcome_accepted(self, log):
        orchestrator = TieredOrchestrator(
            make_providers(log, native_query={'success': True, 'element_handle': 'node-7'})
        )
        result = await orchestrator.execute_step(click())
        assert result.element == 'node-7'

    @pytest.mark.asyncio
    async def test_navigation_needs_no_tier(self, log):
        orchestrator = TieredOrchestrator(make_providers(log))
        result = await orchestrator.execute_step(ActionDescriptor(kind='navigate', label='https://example.com'))

        assert result.success is True
        assert result.used_tier is None
        assert log == []

    @pytest.mark.asyncio
    async def test_disabled_tier_skipped(self, log):
        orchestrator = TieredOrchestrator(
            make_providers(log, native_query=True, vision_ocr=True),
            tiers=[{'tier': 'native_query', 'enabled': False}],
        )
        result = await orchestrator.execute_step(click())

        assert result.used_tier is StrategyTier.VISION_OCR
        assert StrategyTier.NATIVE_QUERY not in log

    @pytest.mark.asyncio
    async def test_missing_provider(self, log):
        orchestrator = TieredOrchestrator({StrategyTier.VISION_OCR: FakeProvider(StrategyTier.VISION_OCR, log, True)})
        result = await orchestrator.execute_step(click())

        assert result.attempts[0].error == "No provider registered"
        assert result.used_tier is StrategyTier.VISION_OCR


class TestTierConfigUpdates:

    def test_reorder(self):
        orchestrator = TieredOrchestrator([])
        tiers = orchestrator.update_tier_config([
            {'tier': 'native_query', 'priority': 5},
            {'tier': 'manual_coordinate', 'priority': 6},
        ])
        assert [t.tier for t in tiers][:2] == [StrategyTier.PROTOCOL_LEVEL, StrategyTier.VISION_OCR]
        assert tiers[-1].tier is StrategyTier.MANUAL_COORDINATE

    def test_invalid_update_keeps_config(self):
        orchestrator = TieredOrchestrator([])
        before = orchestrator.tier_config

        with pytest.raises(ConfigurationError):
            orchestrator.update_tier_config([{'tier': 'manual_coordinate', 'priority': 1}])

        assert orchestrator.tier_config == before

    def test_unknown_tier_rejected(self):
        with pytest.raises(ConfigurationError):
            TieredOrchestrator([], tiers=[{'tier': 'telepathy'}])


class TestExecuteAll:

    @pytest.mark.asyncio
    async def test_failed_step_does_not_stop_run(self):
        log = []
        native = lambda action: action.label != 'Step 3'
        store = HealingEventStore()
        orchestrator = TieredOrchestrator(make_providers(log, native_query=native), event_store=store, inter_step_pause=0)

        summary = await orchestrator.execute_all([click(label=f'Step {i}') for i in range(1, 6)])

        assert summary.total == 5
        assert summary.passed == 4
        assert summary.failed == 1
        assert summary[2].used_tier is StrategyTier.EXHAUSTED

        runs = store.get_runs()
        assert runs[0]['passed'] == 4
        assert runs[0]['failed'] == 1


class TestHealingRetry:

    @pytest.fixture
    def log(self):
        return []

    def orchestrator(self, log, healer):
        return TieredOrchestrator(
            make_providers(log, native_query=lambda action: action.hints.selector == '#new'),
            healer=healer,
            page_context_source=lambda: PageContext(url=PAGE_URL),
            inter_step_pause=0,
        )

    @pytest.mark.asyncio
    async def test_applied_healing_retries_and_is_remembered(self, log):
        healer = AIHealer(providers=[SuggestingProvider('#new', 0.9)])
        orchestrator = self.orchestrator(log, healer)

        result = await orchestrator.execute_step(click())

        assert result.success is True
        assert result.used_tier is StrategyTier.NATIVE_QUERY
        assert result.healing.action is HealingAction.AUTO_APPLY
        assert result.healed_action.hints.selector == '#new'
        assert result.healed_action.healing_annotations[0].original_locator == '#save'
        assert len(result.attempts) == 3
        assert result.attempts[-1].healed is True

        key = CacheKey(normalize_url_pattern(PAGE_URL), 'click', 'Save', hash_locator('#save'))
        entry = healer.cache.peek(key)
        assert entry.healed_locator == '#new'
        assert entry.provider == 'local-heuristic'

    @pytest.mark.asyncio
    async def test_suggestion_is_not_applied(self, log):
        healer = AIHealer(providers=[SuggestingProvider('#new', 0.4)])
        orchestrator = self.orchestrator(log, healer)

        result = await orchestrator.execute_step(click())

        assert result.success is False
        assert result.healing.action is HealingAction.SUGGEST_ONLY
        assert result.healing.suggested_locator == '#new'
        assert result.healed_action is None
        assert log.count(StrategyTier.NATIVE_QUERY) == 1

    @pytest.mark.asyncio
    async def test_snapshot_only_captured_on_exhaustion(self, log):
        snapshot_source = Mock(return_value=None)
        healer = AIHealer(providers=[SuggestingProvider('#new', 0.9)])
        orchestrator = TieredOrchestrator(
            make_providers(log, native_query=True),
            healer=healer,
            snapshot_source=snapshot_source,
        )

        result = await orchestrator.execute_step(click())

        assert result.healing is None
        snapshot_source.assert_not_called()

    @pytest.mark.asyncio
    async def test_broken_page_sources_do_not_block_healing(self, log):
        healer = AIHealer(providers=[SuggestingProvider('#new', 0.9)])
        orchestrator = TieredOrchestrator(
            make_providers(log, native_query=lambda action: action.hints.selector == '#new'),
            healer=healer,
            snapshot_source=Mock(side_effect=RuntimeError("browser gone")),
            page_context_source=Mock(side_effect=RuntimeError("browser gone")),
        )

        result = await orchestrator.execute_step(click())

        assert result.success is True
        assert result.healed_action is not None

    @pytest.mark.asyncio
    async def test_healed_run_counted(self, log):
        healer = AIHealer(providers=[SuggestingProvider('#new', 0.9)])
        orchestrator = self.orchestrator(log, healer)

        summary = await orchestrator.execute_all([click()])

        assert summary.healed == 1
        assert healer.event_store.get_runs()[0]['healed'] == 1
        assert healer.event_store.get_stats()['successful'] == 1


class TestFromConfig:

    @pytest.mark.asyncio
    async def test_settings_come_from_config(self):
        log = []
        config = Config.from_dict({
            'tiers': [{'tier': 'native_query', 'timeout': 4}, {'tier': 'protocol_level', 'enabled': False}],
            'orchestrator': {'inter_step_pause': 0, 'navigation_kinds': ['goto']},
            'healing': {'remote_enabled': False, 'rate_limit': {'max_attempts_per_step': 1}},
        })

        orchestrator = TieredOrchestrator.from_config(config, make_providers(log, native_query=True))

        native = next(t for t in orchestrator.tier_config if t.tier is StrategyTier.NATIVE_QUERY)
        assert native.timeout == 4.0
        assert orchestrator.inter_step_pause == 0
        assert isinstance(orchestrator.healer, AIHealer)
        assert orchestrator.healer.guard.config.max_attempts_per_step == 1
        assert orchestrator.event_store is orchestrator.healer.event_store

        result = await orchestrator.execute_step(ActionDescriptor(kind='goto', label='https://x.io'))
        assert result.used_tier is None
        assert log == []

    def test_healing_disabled_means_no_healer(self):
        config = Config.from_dict({'healing': {'enabled': False}})
        orchestrator = TieredOrchestrator.from_config(config, [])
        assert orchestrator.healer is None

    def test_explicit_healer_and_sources(self):
        healer = AIHealer(providers=[])
        snapshot_source = Mock(return_value=None)
        orchestrator = TieredOrchestrator.from_config(Config(), [], healer=healer, snapshot_source=snapshot_source)
        assert orchestrator.healer is healer
        assert orchestrator._snapshot_source is snapshot_source


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
