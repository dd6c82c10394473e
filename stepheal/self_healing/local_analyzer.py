"""
Offline element matching.

Scores the element inventory captured with a snapshot against what the step
was looking for. No network, no model: text similarity, attribute hits,
distance from the last known position and a tag/kind check.
"""

import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import List, Optional, Dict

from stepheal.models import ElementCandidate, PageSnapshot
from stepheal.self_healing.config import LocalAnalyzerConfig
from stepheal.self_healing.types import AnalysisContext, AnalysisResult, AlternativeLocator
from stepheal.utils.logger import get_logger

logger = get_logger(__name__)

ATTRIBUTE_MATCH_CONFIDENCE = 0.7
MIN_POSITION_CONFIDENCE = 0.3
DUPLICATE_MATCH_BOOST = 0.1
STRUCTURE_MATCH_FLOOR = 0.4

SEARCHABLE_ATTRIBUTES = ('aria-label', 'placeholder', 'title', 'name', 'data-testid', 'data-cy', 'id')

INTERACTIVE_TAGS = {'button', 'a', 'input', 'select', 'textarea'}

# Tags (and roles) a step kind is likely to act on
KIND_TAGS = {
    'click': ({'button', 'a'}, {'button', 'link'}),
    'input': ({'input', 'textarea'}, {'textbox'}),
    'type': ({'input', 'textarea'}, {'textbox'}),
    'keydown': ({'input', 'textarea'}, {'textbox'}),
    'select': ({'select'}, {'listbox', 'combobox'}),
}


def normalize_text(text: str) -> str:
    text = re.sub(r'[^a-z0-9\s]', '', (text or '').lower())
    return re.sub(r'\s+', ' ', text).strip()


def text_similarity(a: str, b: str) -> float:
    """
    Similarity of two normalized strings in [0, 1].

    Identical strings score 1.0, containment scores 0.8, anything else is
    the SequenceMatcher ratio.
    """
    if a == b:
        return 1.0
    if len(a) < 2 or len(b) < 2:
        return 0.0
    if a in b or b in a:
        return 0.8
    return SequenceMatcher(None, a, b).ratio()


@dataclass
class ScoredCandidate:
    """An element with its combined score and why it scored."""
    element: ElementCandidate
    confidence: float
    reasons: List[str] = field(default_factory=list)

    def merge(self, other: 'ScoredCandidate') -> None:
        """Fold in another match for the same element (average plus a boost)."""
        self.confidence = min(1.0, (self.confidence + other.confidence) / 2 + DUPLICATE_MATCH_BOOST)
        self.reasons.extend(other.reasons)


class LocalHeuristicAnalyzer:
    """Default offline analyzer for the local-heuristic provider."""

    def __init__(self, config: Optional[LocalAnalyzerConfig] = None):
        self.config = config if config is not None else LocalAnalyzerConfig()

    def is_available(self) -> bool:
        return True

    async def analyze(self, snapshot: Optional[PageSnapshot], context: AnalysisContext) -> AnalysisResult:
        """
        Find the element described by ``context`` in the snapshot's inventory.

        Args:
            snapshot: Page snapshot; only its element inventory is used
            context: Target label, step kind and last known bounds

        Returns:
            AnalysisResult; ``found`` only when the best match clears the floor
        """
        if snapshot is None or not snapshot.elements:
            return AnalysisResult(found=False, reasoning="No element inventory in snapshot")

        ranked = self.find_candidates(snapshot, context)
        if not ranked:
            return AnalysisResult(found=False, reasoning=f"No element matched '{context.target_label}'")

        best = ranked[0]
        alternatives = tuple(
            AlternativeLocator(c.element.locator, round(c.confidence, 3), strategy='local-heuristic')
            for c in ranked[1:]
        )

        if best.confidence < self.config.best_match_floor:
            return AnalysisResult(
                found=False,
                confidence=best.confidence,
                reasoning=f"Best local match {best.element.locator} scored {best.confidence:.2f}",
                alternatives=alternatives,
            )

        logger.debug(f"Local match {best.element.locator} ({best.confidence:.2f}): {'; '.join(best.reasons)}")
        return AnalysisResult(
            found=True,
            confidence=best.confidence,
            suggested_locator=best.element.locator,
            reasoning='; '.join(best.reasons),
            alternatives=alternatives,
            element_bounds=best.element.bounds,
        )

    def find_candidates(self, snapshot: PageSnapshot, context: AnalysisContext) -> List[ScoredCandidate]:
        """Score, merge and rank candidates, best first, capped at max_candidates."""
        visible = [e for e in snapshot.elements if e.visible]

        matches: List[ScoredCandidate] = []
        matches.extend(self._match_text(visible, context))
        matches.extend(self._match_attributes(visible, context))
        if context.expected_bounds is not None:
            matches.extend(self._match_position(visible, context))
        if context.element_kind:
            matches.extend(self._match_structure(visible, context))

        merged: Dict[str, ScoredCandidate] = {}
        for match in matches:
            existing = merged.get(match.element.locator)
            if existing:
                existing.merge(match)
            else:
                merged[match.element.locator] = ScoredCandidate(match.element, match.confidence, list(match.reasons))

        ranked = sorted(merged.values(), key=lambda c: c.confidence, reverse=True)
        return ranked[:self.config.max_candidates]

    def _match_text(self, elements: List[ElementCandidate], context: AnalysisContext) -> List[ScoredCandidate]:
        target = normalize_text(context.target_label)
        results = []
        for element in elements:
            visible_text = element.text or element.attributes.get('value') or element.attributes.get('placeholder', '')
            similarity = text_similarity(target, normalize_text(visible_text))
            if similarity >= self.config.text_similarity_threshold:
                results.append(ScoredCandidate(
                    element, similarity, [f'Text match: "{visible_text}" ({similarity:.0%})']
                ))
        return results

    def _match_attributes(self, elements: List[ElementCandidate], context: AnalysisContext) -> List[ScoredCandidate]:
        target = (context.target_label or '').strip().lower()
        if not target:
            return []

        results = []
        for element in elements:
            for attr in SEARCHABLE_ATTRIBUTES:
                value = element.attributes.get(attr)
                if value and target in value.lower():
                    results.append(ScoredCandidate(
                        element, ATTRIBUTE_MATCH_CONFIDENCE, [f'Attribute {attr}="{value}"']
                    ))
        return results

    def _match_position(self, elements: List[ElementCandidate], context: AnalysisContext) -> List[ScoredCandidate]:
        threshold = self.config.position_threshold
        results = []
        for element in elements:
            if element.bounds is None or not self._is_interactive(element):
                continue
            distance = element.bounds.distance_to(context.expected_bounds)
            if distance <= threshold:
                confidence = max(MIN_POSITION_CONFIDENCE, 1 - distance / threshold)
                results.append(ScoredCandidate(
                    element, confidence, [f'Position match: {distance:.0f}px from expected']
                ))
        return results

    def _match_structure(self, elements: List[ElementCandidate], context: AnalysisContext) -> List[ScoredCandidate]:
        kind = context.element_kind.lower()
        tags, roles = KIND_TAGS.get(kind, (set(), set()))
        results = []
        for element in elements:
            score = 0.3
            tag = element.tag.lower()
            attrs = element.attributes
            if tag in tags:
                score += 0.2
            if attrs.get('role') in roles or (roles & {'textbox'} and 'contenteditable' in attrs):
                score += 0.15
            if 'onclick' in attrs:
                score += 0.1
            if 'tabindex' in attrs:
                score += 0.05
            score = min(1.0, score)

            if score > STRUCTURE_MATCH_FLOOR:
                results.append(ScoredCandidate(element, score, [f'Structure match for {kind}']))
        return results

    @staticmethod
    def _is_interactive(element: ElementCandidate) -> bool:
        attrs = element.attributes
        return (
            element.tag.lower() in INTERACTIVE_TAGS
            or attrs.get('role') == 'button'
            or 'onclick' in attrs
        )
