"""
Automation Module

Strategy tiers and the orchestrator that runs steps through them.
"""

from .tiers import (
    StrategyTier,
    TierConfig,
    DEFAULT_TIER_CONFIG,
    StrategyProvider,
    StrategyOutcome,
    TierAttemptResult,
    OrchestrationResult,
    RunSummary,
    build_tier_config,
    validate_tier_config,
)
from .orchestrator import TieredOrchestrator

__all__ = [
    'StrategyTier',
    'TierConfig',
    'DEFAULT_TIER_CONFIG',
    'StrategyProvider',
    'StrategyOutcome',
    'TierAttemptResult',
    'OrchestrationResult',
    'RunSummary',
    'build_tier_config',
    'validate_tier_config',
    'TieredOrchestrator',
]
