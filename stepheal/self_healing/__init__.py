"""
Self-Healing System

Proposes replacement locators for steps whose recorded locator stopped
resolving: cached healings first, then offline element matching, then a
remote vision model behind a rate limiter and circuit breaker.
"""

from .types import HealingAction, HealingRequest, HealingResponse, ProviderType
from .confidence import ConfidencePolicy
from .config import HealingConfig, build_healing_config
from .cache import HealingCache, HealingCacheEntry, CacheKey, normalize_url_pattern, hash_locator
from .guards import RateLimiter, CircuitBreaker, CircuitState, RemoteCallGuard
from .local_analyzer import LocalHeuristicAnalyzer
from .vision_locator import RemoteVisionClient
from .events import HealingEventStore
from .healer import AIHealer

__all__ = [
    'AIHealer',
    'HealingAction',
    'HealingRequest',
    'HealingResponse',
    'ProviderType',
    'ConfidencePolicy',
    'HealingConfig',
    'build_healing_config',
    'HealingCache',
    'HealingCacheEntry',
    'CacheKey',
    'normalize_url_pattern',
    'hash_locator',
    'RateLimiter',
    'CircuitBreaker',
    'CircuitState',
    'RemoteCallGuard',
    'LocalHeuristicAnalyzer',
    'RemoteVisionClient',
    'HealingEventStore',
]
