"""
Recorded step model.

An ActionDescriptor is what the recorder captured for a single step. It is
immutable: healing never edits a descriptor in place, it derives a new one
with the replacement locator and an annotation describing where it came from.
"""

import base64
import io
import math
import time
from dataclasses import dataclass, field, replace, asdict
from datetime import datetime, timezone
from typing import Optional, Tuple, Dict, Any

from PIL import Image


@dataclass(frozen=True)
class BoundingBox:
    """Element rectangle in page pixels."""
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)

    def distance_to(self, other: 'BoundingBox') -> float:
        """Distance between the two centers."""
        cx, cy = self.center
        ox, oy = other.center
        return math.hypot(cx - ox, cy - oy)

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BoundingBox':
        return cls(
            x=float(data.get('x', 0)),
            y=float(data.get('y', 0)),
            width=float(data.get('width', 0)),
            height=float(data.get('height', 0)),
        )


@dataclass(frozen=True)
class LocatorHints:
    """Everything the recorder knew about how to find the element again."""
    selector: Optional[str] = None
    xpath: Optional[str] = None
    element_id: Optional[str] = None
    name: Optional[str] = None
    test_id: Optional[str] = None
    role: Optional[str] = None
    aria_label: Optional[str] = None
    text: Optional[str] = None
    placeholder: Optional[str] = None
    coordinates: Optional[Tuple[int, int]] = None
    frame_chain: Tuple[str, ...] = ()
    shadow_hosts: Tuple[str, ...] = ()

    @property
    def semantic_descriptor(self) -> Optional[str]:
        """Accessibility-style description, e.g. ``button "Save"``."""
        if self.role and (self.aria_label or self.text):
            return f'{self.role} "{self.aria_label or self.text}"'
        return self.aria_label or None


@dataclass(frozen=True)
class HealingAnnotation:
    """Record of a locator replacement applied to a step."""
    original_locator: str
    healed_locator: str
    provider: str
    confidence: float
    action: str
    applied_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"))


@dataclass(frozen=True)
class ActionDescriptor:
    """A single recorded step."""
    kind: str
    label: str
    hints: LocatorHints = field(default_factory=LocatorHints)
    bounds: Optional[BoundingBox] = None
    manual_override: Optional[Tuple[int, int]] = None
    value: Optional[str] = None
    step_number: int = 0
    step_id: Optional[str] = None
    healing_annotations: Tuple[HealingAnnotation, ...] = ()

    @property
    def step_key(self) -> str:
        """Identity used for per-step counters within a run."""
        if self.step_id:
            return self.step_id
        return f"{self.step_number}:{self.kind}:{self.label}"

    @property
    def primary_locator(self) -> str:
        """The locator healing is asked to replace."""
        hints = self.hints
        return (
            hints.selector
            or hints.xpath
            or hints.semantic_descriptor
            or (f"@{hints.coordinates[0]},{hints.coordinates[1]}" if hints.coordinates else "")
        )

    @property
    def was_healed(self) -> bool:
        return bool(self.healing_annotations)

    def is_navigation(self, navigation_kinds: Tuple[str, ...] = ('open', 'navigate')) -> bool:
        return self.kind.lower() in navigation_kinds

    def with_healed_locator(
        self,
        healed_locator: str,
        provider: str,
        confidence: float,
        action: str
    ) -> 'ActionDescriptor':
        """
        Derive a copy that resolves through ``healed_locator``.

        Args:
            healed_locator: Replacement selector proposed by healing
            provider: Healing provider that proposed it
            confidence: Provider confidence (0-1)
            action: Resolved confidence action

        Returns:
            New ActionDescriptor; this one is left untouched
        """
        annotation = HealingAnnotation(
            original_locator=self.primary_locator,
            healed_locator=healed_locator,
            provider=provider,
            confidence=confidence,
            action=action,
        )
        return replace(
            self,
            hints=replace(self.hints, selector=healed_locator),
            healing_annotations=self.healing_annotations + (annotation,),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        data = asdict(self)
        if self.hints.coordinates:
            data['hints']['coordinates'] = list(self.hints.coordinates)
        if self.manual_override:
            data['manual_override'] = list(self.manual_override)
        data['hints']['frame_chain'] = list(self.hints.frame_chain)
        data['hints']['shadow_hosts'] = list(self.hints.shadow_hosts)
        data['healing_annotations'] = [asdict(a) for a in self.healing_annotations]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActionDescriptor':
        """Create from a recording-store dict."""
        hints_data = dict(data.get('hints') or {})
        if hints_data.get('coordinates'):
            hints_data['coordinates'] = tuple(hints_data['coordinates'])
        hints_data['frame_chain'] = tuple(hints_data.get('frame_chain') or ())
        hints_data['shadow_hosts'] = tuple(hints_data.get('shadow_hosts') or ())

        bounds = data.get('bounds')
        override = data.get('manual_override')
        return cls(
            kind=data['kind'],
            label=data.get('label', ''),
            hints=LocatorHints(**hints_data),
            bounds=BoundingBox.from_dict(bounds) if bounds else None,
            manual_override=tuple(override) if override else None,
            value=data.get('value'),
            step_number=int(data.get('step_number', 0)),
            step_id=data.get('step_id'),
            healing_annotations=tuple(
                HealingAnnotation(**a) for a in data.get('healing_annotations') or ()
            ),
        )


@dataclass(frozen=True)
class PageContext:
    """Identity of the page a step ran against."""
    url: str
    title: str = ""


@dataclass(frozen=True)
class ElementCandidate:
    """An element visible in a snapshot, as reported by the page capture."""
    locator: str
    tag: str = ""
    text: str = ""
    bounds: Optional[BoundingBox] = None
    attributes: Dict[str, str] = field(default_factory=dict)
    visible: bool = True


@dataclass(frozen=True)
class PageSnapshot:
    """
    Visual evidence for a healing request.

    ``image_data`` is PNG bytes. ``elements`` is the optional element
    inventory captured alongside the screenshot; offline analysis works
    from it, remote vision works from the pixels.
    """
    image_data: bytes
    width: int
    height: int
    elements: Tuple[ElementCandidate, ...] = ()
    captured_at: float = field(default_factory=time.time)

    @classmethod
    def from_image(cls, image: Image.Image, elements: Tuple[ElementCandidate, ...] = ()) -> 'PageSnapshot':
        """Build a snapshot from a PIL image."""
        buffer = io.BytesIO()
        image.save(buffer, format='PNG')
        width, height = image.size
        return cls(image_data=buffer.getvalue(), width=width, height=height, elements=tuple(elements))

    @classmethod
    def from_png(cls, png_bytes: bytes, elements: Tuple[ElementCandidate, ...] = ()) -> 'PageSnapshot':
        """Build a snapshot from raw PNG bytes, reading the size from the header."""
        with Image.open(io.BytesIO(png_bytes)) as image:
            width, height = image.size
        return cls(image_data=png_bytes, width=width, height=height, elements=tuple(elements))

    def to_base64(self) -> str:
        return base64.b64encode(self.image_data).decode('utf-8')
