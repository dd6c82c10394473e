"""
stepheal - tiered step replay with self-healing locators.

Replays recorded browser steps through a reliability-ordered chain of
strategy tiers and, when every tier fails, proposes a replacement locator
from a cache, an offline analyzer or a remote vision model.
"""

__version__ = '0.1.0'

from .errors import ConfigurationError, ProviderError
from .models import (
    ActionDescriptor,
    LocatorHints,
    BoundingBox,
    PageContext,
    PageSnapshot,
    ElementCandidate,
)
from .automation import (
    StrategyTier,
    TierConfig,
    StrategyProvider,
    StrategyOutcome,
    OrchestrationResult,
    TieredOrchestrator,
    build_tier_config,
)
from .agent import DecisionEngine, DecisionContext
from .self_healing import AIHealer, HealingConfig, HealingCache, ConfidencePolicy, HealingAction
from .utils.config import Config, load_config, save_config, configure_logging

__all__ = [
    'ConfigurationError',
    'ProviderError',
    'ActionDescriptor',
    'LocatorHints',
    'BoundingBox',
    'PageContext',
    'PageSnapshot',
    'ElementCandidate',
    'StrategyTier',
    'TierConfig',
    'StrategyProvider',
    'StrategyOutcome',
    'OrchestrationResult',
    'TieredOrchestrator',
    'build_tier_config',
    'DecisionEngine',
    'DecisionContext',
    'AIHealer',
    'HealingConfig',
    'HealingCache',
    'ConfidencePolicy',
    'HealingAction',
    'Config',
    'load_config',
    'save_config',
    'configure_logging',
]
