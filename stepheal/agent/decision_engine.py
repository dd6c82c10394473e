"""
Decision Engine

Decides, per step, which strategy tiers are worth trying and in what order.
The order always comes from the configured tier priorities; the engine only
narrows the candidate set using what was recorded about the element and
what the environment can currently do.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Iterable, List, FrozenSet, Tuple

from stepheal.automation.tiers import (
    StrategyTier,
    TierConfig,
    DEFAULT_TIER_CONFIG,
    sort_tiers,
    validate_tier_config,
)
from stepheal.models import ActionDescriptor

logger = logging.getLogger(__name__)


# Ids produced by bundlers and UI frameworks rather than by a developer
AUTO_GENERATED_ID_PATTERNS = (
    re.compile(r'^[a-f0-9]{8,}$', re.IGNORECASE),        # hex hash
    re.compile(r'^\d+$'),                                 # pure digits
    re.compile(r'^:r[0-9a-z]+:$', re.IGNORECASE),         # React useId
    re.compile(r'^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$', re.IGNORECASE),
    re.compile(r'^(ember|ext-gen|yui_|gwt-uid-|uid-)\d+', re.IGNORECASE),
)

AUTO_GENERATED_ID_PREFIXES = (
    '_',
    'rc-',
    'mui-',
    'radix-',
    'headlessui-',
    'react-select-',
    'downshift-',
    'ng-tns-',
    'cdk-',
    'mat-input-',
)


def is_auto_generated_id(element_id: Optional[str]) -> bool:
    """
    Check whether an element id looks machine-generated.

    Such ids change between builds or renders, so they are not a stable
    hint for protocol-level lookup.
    """
    if not element_id:
        return False
    value = element_id.strip()
    if any(p.search(value) for p in AUTO_GENERATED_ID_PATTERNS):
        return True
    return value.lower().startswith(AUTO_GENERATED_ID_PREFIXES)


@dataclass(frozen=True)
class DecisionContext:
    """Routing facts for one step. Rebuilt on every execution."""
    has_manual_override: bool = False
    has_stable_id: bool = False
    has_name: bool = False
    has_test_id: bool = False
    in_isolated_frame: bool = False
    in_component_boundary: bool = False
    protocol_available: bool = False
    previous_failures: FrozenSet[StrategyTier] = field(default_factory=frozenset)

    @property
    def has_stable_hint(self) -> bool:
        return self.has_stable_id or self.has_name or self.has_test_id

    @classmethod
    def from_action(
        cls,
        action: ActionDescriptor,
        protocol_available: bool,
        previous_failures: Iterable[StrategyTier] = ()
    ) -> 'DecisionContext':
        hints = action.hints
        return cls(
            has_manual_override=action.manual_override is not None,
            has_stable_id=bool(hints.element_id) and not is_auto_generated_id(hints.element_id),
            has_name=bool(hints.name),
            has_test_id=bool(hints.test_id),
            in_isolated_frame=bool(hints.frame_chain),
            in_component_boundary=bool(hints.shadow_hosts),
            protocol_available=protocol_available,
            previous_failures=frozenset(previous_failures),
        )


class DecisionEngine:
    """
    Selects the tier sequence for a step.

    Rules:
    - manual_coordinate is a candidate only when a manual override exists
    - protocol_level needs protocol access and a stable id/name/test-id
    - native_query and vision_ocr are always candidates
    - tiers that already failed for this step are dropped
    - survivors are ordered by configured priority
    """

    def __init__(self, tiers: Optional[Iterable[TierConfig]] = None):
        """
        Args:
            tiers: Tier configuration supplying priorities (defaults apply)
        """
        self._tiers = sort_tiers(tiers if tiers is not None else DEFAULT_TIER_CONFIG)
        validate_tier_config(self._tiers)

    @property
    def tiers(self) -> Tuple[TierConfig, ...]:
        return self._tiers

    def build_context(
        self,
        action: ActionDescriptor,
        protocol_available: bool,
        previous_failures: Iterable[StrategyTier] = ()
    ) -> DecisionContext:
        """Derive routing facts from the recorded step and environment."""
        return DecisionContext.from_action(action, protocol_available, previous_failures)

    def select_sequence(
        self,
        context: DecisionContext,
        tiers: Optional[Iterable[TierConfig]] = None
    ) -> List[StrategyTier]:
        """
        Compute the ordered tiers to attempt.

        Args:
            context: Routing facts for the step
            tiers: Tier configuration to order by (defaults to the engine's own)

        Returns:
            Tiers in execution order, most reliable first
        """
        if tiers is None:
            ordered = self._tiers
        else:
            ordered = sort_tiers(tiers)
            validate_tier_config(ordered)

        candidates = {StrategyTier.NATIVE_QUERY, StrategyTier.VISION_OCR}

        if context.has_manual_override:
            candidates.add(StrategyTier.MANUAL_COORDINATE)

        if context.protocol_available and context.has_stable_hint:
            candidates.add(StrategyTier.PROTOCOL_LEVEL)

        candidates -= context.previous_failures

        sequence = [t.tier for t in ordered if t.tier in candidates]

        logger.debug(
            f"Tier sequence: {' -> '.join(t.value for t in sequence) or '(none)'} "
            f"(protocol={context.protocol_available}, stable_hint={context.has_stable_hint}, "
            f"frame={context.in_isolated_frame}, shadow={context.in_component_boundary}, "
            f"failed={sorted(t.value for t in context.previous_failures)})"
        )
        return sequence
