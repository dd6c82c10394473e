"""
Confidence policy: maps a confidence score to a HealingAction.
"""

from dataclasses import dataclass

from stepheal.errors import ConfigurationError
from stepheal.self_healing.types import HealingAction


@dataclass(frozen=True)
class ConfidencePolicy:
    """
    Threshold ladder, highest first:

    >= auto_apply   -> AUTO_APPLY
    >= apply_flag   -> APPLY_FLAG
    >= minimum      -> SUGGEST_ONLY
    otherwise       -> NO_ACTION
    """
    auto_apply: float = 0.80
    apply_flag: float = 0.60
    minimum: float = 0.30

    def __post_init__(self):
        for name in ('auto_apply', 'apply_flag', 'minimum'):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"Confidence threshold {name}={value} must be within [0, 1]")
        if not self.auto_apply >= self.apply_flag >= self.minimum:
            raise ConfigurationError(
                f"Confidence thresholds must satisfy auto_apply >= apply_flag >= minimum "
                f"(got {self.auto_apply} / {self.apply_flag} / {self.minimum})"
            )

    def decide(self, confidence: float) -> HealingAction:
        if confidence >= self.auto_apply:
            return HealingAction.AUTO_APPLY
        if confidence >= self.apply_flag:
            return HealingAction.APPLY_FLAG
        if confidence >= self.minimum:
            return HealingAction.SUGGEST_ONLY
        return HealingAction.NO_ACTION

    def to_dict(self) -> dict:
        return {'auto_apply': self.auto_apply, 'apply_flag': self.apply_flag, 'minimum': self.minimum}
