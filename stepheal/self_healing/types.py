"""
Healing request/response types shared by the healer and its providers.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Dict, Any, List

from stepheal.models import ActionDescriptor, BoundingBox, PageContext, PageSnapshot


class HealingAction(Enum):
    """What the caller should do with a suggestion, by confidence."""
    NO_ACTION = 'no-action'
    SUGGEST_ONLY = 'suggest-only'
    APPLY_FLAG = 'apply-flag'
    AUTO_APPLY = 'auto-apply'

    @property
    def aggressiveness(self) -> int:
        """0 for no-action up to 3 for auto-apply."""
        return list(HealingAction).index(self)

    @property
    def applies_locator(self) -> bool:
        return self in (HealingAction.AUTO_APPLY, HealingAction.APPLY_FLAG)


class ProviderType(Enum):
    CACHE = 'cache'
    LOCAL_HEURISTIC = 'local-heuristic'
    REMOTE_VISION = 'remote-vision'
    FALLBACK = 'fallback'


@dataclass(frozen=True)
class AlternativeLocator:
    locator: str
    confidence: float
    strategy: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'locator': self.locator, 'confidence': self.confidence, 'strategy': self.strategy}


@dataclass(frozen=True)
class AnalysisContext:
    """What an analyzer is asked to find."""
    target_label: str
    element_kind: str
    expected_bounds: Optional[BoundingBox] = None
    original_locator: str = ""
    hints: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AnalysisResult:
    """What a local or remote analyzer found."""
    found: bool
    confidence: float = 0.0
    suggested_locator: Optional[str] = None
    reasoning: str = ""
    alternatives: Tuple[AlternativeLocator, ...] = ()
    element_bounds: Optional[BoundingBox] = None


@dataclass(frozen=True)
class HealingRequest:
    """All the evidence needed to heal one failing step."""
    action: ActionDescriptor
    snapshot: Optional[PageSnapshot]
    page: PageContext
    session_id: str = field(default_factory=lambda: f"heal_{uuid.uuid4().hex[:12]}")
    attempted_tiers: Tuple[str, ...] = ()
    timestamp: float = field(default_factory=time.time)


@dataclass
class HealingResponse:
    """Result of a healing attempt."""
    success: bool
    provider: ProviderType
    confidence: float = 0.0
    reasoning: str = ""
    action: HealingAction = HealingAction.NO_ACTION
    suggested_locator: Optional[str] = None
    alternatives: List[AlternativeLocator] = field(default_factory=list)
    element_bounds: Optional[BoundingBox] = None
    duration: float = 0.0
    error: Optional[str] = None

    @property
    def cache_hit(self) -> bool:
        return self.success and self.provider is ProviderType.CACHE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'provider': self.provider.value,
            'confidence': self.confidence,
            'reasoning': self.reasoning,
            'action': self.action.value,
            'suggested_locator': self.suggested_locator,
            'alternatives': [a.to_dict() for a in self.alternatives],
            'duration_ms': int(self.duration * 1000),
            'error': self.error,
        }
