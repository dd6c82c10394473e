"""
Strategy tiers and their results.

TIER ORDER:
1. native_query       - DOM query with the recorded selector (fastest)
2. protocol_level     - remote-debugging protocol lookup
3. vision_ocr         - screenshot + OCR/vision match
4. manual_coordinate  - user-defined coordinates (LAST RESORT ONLY)

Manual coordinates are a safety net, never a primary method. Any tier
configuration that would schedule manual_coordinate ahead of another tier is
rejected when it is built.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace, fields
from enum import Enum
from typing import Optional, Tuple, Any, Iterable, Union, Dict, List

from stepheal.errors import ConfigurationError
from stepheal.models import ActionDescriptor


class StrategyTier(Enum):
    """Resolution technique. EXHAUSTED is a result sentinel, never configured."""
    NATIVE_QUERY = 'native_query'
    PROTOCOL_LEVEL = 'protocol_level'
    VISION_OCR = 'vision_ocr'
    MANUAL_COORDINATE = 'manual_coordinate'
    EXHAUSTED = 'exhausted'

    @classmethod
    def configurable(cls) -> Tuple['StrategyTier', ...]:
        return (cls.NATIVE_QUERY, cls.PROTOCOL_LEVEL, cls.VISION_OCR, cls.MANUAL_COORDINATE)

    @classmethod
    def parse(cls, value: Union[str, 'StrategyTier']) -> 'StrategyTier':
        """Parse a tier name, rejecting unknown names and the sentinel."""
        if isinstance(value, StrategyTier):
            tier = value
        else:
            try:
                tier = cls(str(value).strip().lower())
            except ValueError:
                raise ConfigurationError(f"Unknown strategy tier: {value!r}")
        if tier is cls.EXHAUSTED:
            raise ConfigurationError("'exhausted' is a result marker, not a configurable tier")
        return tier

    @property
    def rank(self) -> int:
        """Reliability-first position, used to break priority ties."""
        return list(StrategyTier).index(self)


@dataclass(frozen=True)
class TierConfig:
    """Per-tier execution settings. Lower priority runs first."""
    tier: StrategyTier
    enabled: bool = True
    timeout: float = 3.0  # seconds
    priority: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tier': self.tier.value,
            'enabled': self.enabled,
            'timeout': self.timeout,
            'priority': self.priority,
        }


DEFAULT_TIER_CONFIG: Tuple[TierConfig, ...] = (
    TierConfig(StrategyTier.NATIVE_QUERY, enabled=True, timeout=3.0, priority=1),
    TierConfig(StrategyTier.PROTOCOL_LEVEL, enabled=True, timeout=3.0, priority=2),
    TierConfig(StrategyTier.VISION_OCR, enabled=True, timeout=5.0, priority=3),
    TierConfig(StrategyTier.MANUAL_COORDINATE, enabled=True, timeout=1.0, priority=4),  # LAST!
)

TierOverride = Union[TierConfig, Dict[str, Any]]


def sort_tiers(tiers: Iterable[TierConfig]) -> Tuple[TierConfig, ...]:
    """Order by priority, falling back to the reliability-first tier order."""
    return tuple(sorted(tiers, key=lambda t: (t.priority, t.tier.rank)))


def validate_tier_config(tiers: Iterable[TierConfig]) -> None:
    """
    Check a tier list before it is used.

    Raises:
        ConfigurationError: duplicate or missing tiers, non-positive timeouts,
            or manual_coordinate not strictly after every other tier
    """
    tiers = list(tiers)
    seen = [t.tier for t in tiers]

    for tier in StrategyTier.configurable():
        count = seen.count(tier)
        if count != 1:
            raise ConfigurationError(f"Tier {tier.value} must appear exactly once (found {count})")

    for t in tiers:
        if t.timeout <= 0:
            raise ConfigurationError(f"Tier {t.tier.value} timeout must be positive, got {t.timeout}")

    manual = next(t for t in tiers if t.tier is StrategyTier.MANUAL_COORDINATE)
    latest_other = max(t.priority for t in tiers if t.tier is not StrategyTier.MANUAL_COORDINATE)
    if manual.priority <= latest_other:
        raise ConfigurationError(
            f"manual_coordinate priority {manual.priority} must be greater than every other "
            f"tier (highest other is {latest_other}); manual coordinates are a last resort"
        )


def _coerce_override(override: TierOverride) -> Tuple[StrategyTier, Dict[str, Any]]:
    if isinstance(override, TierConfig):
        values = {f.name: getattr(override, f.name) for f in fields(TierConfig)}
    else:
        values = dict(override)

    if 'tier' not in values:
        raise ConfigurationError(f"Tier override is missing 'tier': {override!r}")

    tier = StrategyTier.parse(values.pop('tier'))
    unknown = set(values) - {'enabled', 'timeout', 'priority'}
    if unknown:
        raise ConfigurationError(f"Unknown tier settings for {tier.value}: {sorted(unknown)}")

    if 'timeout' in values:
        values['timeout'] = float(values['timeout'])
    if 'priority' in values:
        values['priority'] = int(values['priority'])
    if 'enabled' in values and not isinstance(values['enabled'], bool):
        raise ConfigurationError(f"Tier {tier.value} enabled must be true or false, got {values['enabled']!r}")
    return tier, values


def build_tier_config(
    overrides: Optional[Iterable[TierOverride]] = None,
    base: Iterable[TierConfig] = DEFAULT_TIER_CONFIG
) -> Tuple[TierConfig, ...]:
    """
    Merge partial overrides onto a base tier list.

    Args:
        overrides: TierConfig objects or dicts with a 'tier' key plus any of
            enabled/timeout/priority
        base: Tier list to merge onto (defaults to DEFAULT_TIER_CONFIG)

    Returns:
        Validated tier tuple sorted by priority

    Raises:
        ConfigurationError: if the merged result is invalid
    """
    merged = {t.tier: t for t in base}
    for override in overrides or ():
        tier, values = _coerce_override(override)
        merged[tier] = replace(merged.get(tier, TierConfig(tier)), **values)

    result = sort_tiers(merged.values())
    validate_tier_config(result)
    return result


@dataclass(frozen=True)
class StrategyOutcome:
    """What a strategy provider reports back for one attempt."""
    success: bool
    error: Optional[str] = None
    confidence: Optional[float] = None
    element: Any = None
    duration: Optional[float] = None

    @classmethod
    def coerce(cls, value: Any) -> 'StrategyOutcome':
        """Accept a StrategyOutcome, a mapping or a bare bool."""
        if isinstance(value, StrategyOutcome):
            return value
        if isinstance(value, dict):
            return cls(
                success=bool(value.get('success', False)),
                error=value.get('error'),
                confidence=value.get('confidence'),
                element=value.get('element') or value.get('element_handle'),
                duration=value.get('duration'),
            )
        if isinstance(value, bool):
            return cls(success=value)
        return cls(success=False, error=f"Provider returned unsupported result: {type(value).__name__}")


class StrategyProvider(ABC):
    """
    One resolution technique, implemented outside this package.

    Implementations locate (and act on) the element described by an
    ActionDescriptor. They may raise; the orchestrator converts any
    exception or timeout into a failed attempt.
    """

    tier: StrategyTier

    @abstractmethod
    async def execute(self, action: ActionDescriptor) -> StrategyOutcome:
        """Attempt the action. Must not be called concurrently for one page."""


@dataclass(frozen=True)
class TierAttemptResult:
    """Result of one tier attempt."""
    tier: StrategyTier
    success: bool
    duration: float
    error: Optional[str] = None
    confidence: Optional[float] = None
    element: Any = None
    healed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tier': self.tier.value,
            'success': self.success,
            'duration_ms': int(self.duration * 1000),
            'error': self.error,
            'confidence': self.confidence,
            'healed': self.healed,
        }


@dataclass(frozen=True)
class OrchestrationResult:
    """Outcome of executing one step."""
    success: bool
    used_tier: Optional[StrategyTier]
    attempts: Tuple[TierAttemptResult, ...] = ()
    total_duration: float = 0.0
    step_key: str = ""
    error: Optional[str] = None
    element: Any = None
    healing: Any = None  # HealingResponse when healing was consulted
    healed_action: Optional[ActionDescriptor] = None

    @property
    def exhausted(self) -> bool:
        return self.used_tier is StrategyTier.EXHAUSTED

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'step': self.step_key,
            'success': self.success,
            'used_tier': self.used_tier.value if self.used_tier else None,
            'attempts': [a.to_dict() for a in self.attempts],
            'total_duration_ms': int(self.total_duration * 1000),
            'error': self.error,
        }
        if self.healing is not None:
            data['healing'] = self.healing.to_dict()
        return data


@dataclass
class RunSummary:
    """Results of execute_all, one entry per step in input order."""
    results: List[OrchestrationResult] = field(default_factory=list)

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def healed(self) -> int:
        return sum(1 for r in self.results if r.success and r.healed_action is not None)

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self):
        return iter(self.results)

    def __getitem__(self, index: int) -> OrchestrationResult:
        return self.results[index]
