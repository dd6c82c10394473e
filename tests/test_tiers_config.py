"""
Unit tests for tier configuration.

Tests default ordering, override merging and the manual-coordinate-last rule.
"""

import pytest

from stepheal.automation.tiers import (
    StrategyTier,
    TierConfig,
    StrategyOutcome,
    DEFAULT_TIER_CONFIG,
    build_tier_config,
    validate_tier_config,
)
from stepheal.errors import ConfigurationError


class TestBuildTierConfig:
    """Test suite for build_tier_config."""

    def test_defaults_are_reliability_first(self):
        tiers = build_tier_config()
        assert [t.tier for t in tiers] == [
            StrategyTier.NATIVE_QUERY,
            StrategyTier.PROTOCOL_LEVEL,
            StrategyTier.VISION_OCR,
            StrategyTier.MANUAL_COORDINATE,
        ]
        assert tiers == DEFAULT_TIER_CONFIG

    def test_partial_override_merges_onto_defaults(self):
        tiers = build_tier_config([{'tier': 'vision_ocr', 'timeout': 8}])
        vision = next(t for t in tiers if t.tier is StrategyTier.VISION_OCR)
        assert vision.timeout == 8.0
        assert vision.priority == 3
        assert vision.enabled is True

    def test_override_resorts_by_priority(self):
        tiers = build_tier_config([{'tier': 'protocol_level', 'priority': 0}])
        assert tiers[0].tier is StrategyTier.PROTOCOL_LEVEL
        assert tiers[-1].tier is StrategyTier.MANUAL_COORDINATE

    def test_accepts_tier_config_objects(self):
        tiers = build_tier_config([TierConfig(StrategyTier.NATIVE_QUERY, enabled=False, timeout=2.0, priority=1)])
        native = next(t for t in tiers if t.tier is StrategyTier.NATIVE_QUERY)
        assert native.enabled is False

    @pytest.mark.parametrize("priority", [0, 1, 3])
    def test_manual_cannot_move_ahead_of_vision(self, priority):
        with pytest.raises(ConfigurationError):
            build_tier_config([{'tier': 'manual_coordinate', 'priority': priority}])

    def test_manual_rule_applies_even_when_disabled(self):
        with pytest.raises(ConfigurationError):
            build_tier_config([{'tier': 'manual_coordinate', 'priority': 0, 'enabled': False}])

    def test_raising_another_tier_above_manual_is_rejected(self):
        with pytest.raises(ConfigurationError):
            build_tier_config([{'tier': 'vision_ocr', 'priority': 9}])

    def test_unknown_tier_rejected(self):
        with pytest.raises(ConfigurationError):
            build_tier_config([{'tier': 'telepathy', 'priority': 1}])

    def test_exhausted_is_not_configurable(self):
        with pytest.raises(ConfigurationError):
            build_tier_config([{'tier': 'exhausted', 'priority': 9}])

    def test_unknown_setting_rejected(self):
        with pytest.raises(ConfigurationError):
            build_tier_config([{'tier': 'native_query', 'retries': 3}])

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ConfigurationError):
            build_tier_config([{'tier': 'native_query', 'timeout': 0}])

    def test_missing_tier_rejected(self):
        with pytest.raises(ConfigurationError):
            validate_tier_config(DEFAULT_TIER_CONFIG[:3])


class TestStrategyOutcome:
    """Test suite for StrategyOutcome.coerce."""

    def test_bool(self):
        assert StrategyOutcome.coerce(True).success is True
        assert StrategyOutcome.coerce(False).success is False

    def test_mapping(self):
        outcome = StrategyOutcome.coerce({'success': True, 'confidence': 0.7, 'element_handle': 'node-1'})
        assert outcome.success is True
        assert outcome.confidence == 0.7
        assert outcome.element == 'node-1'

    def test_unsupported_value_is_failure(self):
        outcome = StrategyOutcome.coerce(42)
        assert outcome.success is False
        assert 'int' in outcome.error


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
