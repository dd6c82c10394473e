"""
Configuration for the self-healing system.

Every section is a frozen dataclass validated on construction, so an invalid
threshold ordering or bound is rejected before any step runs.
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Optional, Dict, Any

from dotenv import load_dotenv

from stepheal.errors import ConfigurationError
from stepheal.self_healing.confidence import ConfidencePolicy

API_KEY_ENV_VAR = "STEPHEAL_VISION_API_KEY"


def load_api_key(env_file: Optional[str] = None) -> str:
    """Load the remote vision API key from the environment or a .env file."""
    key = os.getenv(API_KEY_ENV_VAR, "")
    if key:
        return key

    env_path = Path(env_file) if env_file else Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)
        return os.getenv(API_KEY_ENV_VAR, "")

    return ""


@dataclass(frozen=True)
class HealingCacheConfig:
    enabled: bool = True
    ttl_seconds: float = 24 * 60 * 60
    max_entries: int = 1000
    min_success_rate: float = 0.7
    storage_path: Optional[str] = None  # None keeps the cache in memory

    def __post_init__(self):
        if not isinstance(self.enabled, bool):
            raise ConfigurationError(f"cache.enabled must be true or false, got {self.enabled!r}")
        if self.ttl_seconds <= 0:
            raise ConfigurationError(f"cache.ttl_seconds must be positive, got {self.ttl_seconds}")
        if self.max_entries < 1:
            raise ConfigurationError(f"cache.max_entries must be at least 1, got {self.max_entries}")
        if not 0.0 <= self.min_success_rate <= 1.0:
            raise ConfigurationError(f"cache.min_success_rate must be within [0, 1], got {self.min_success_rate}")


@dataclass(frozen=True)
class RateLimitConfig:
    max_calls_per_window: int = 50
    window_seconds: float = 60.0
    max_attempts_per_step: int = 2
    circuit_breaker_threshold: int = 3
    circuit_breaker_cooldown_seconds: float = 5 * 60

    def __post_init__(self):
        if self.max_calls_per_window < 1:
            raise ConfigurationError("rate_limit.max_calls_per_window must be at least 1")
        if self.window_seconds <= 0:
            raise ConfigurationError("rate_limit.window_seconds must be positive")
        if self.max_attempts_per_step < 1:
            raise ConfigurationError("rate_limit.max_attempts_per_step must be at least 1")
        if self.circuit_breaker_threshold < 1:
            raise ConfigurationError("rate_limit.circuit_breaker_threshold must be at least 1")
        if self.circuit_breaker_cooldown_seconds <= 0:
            raise ConfigurationError("rate_limit.circuit_breaker_cooldown_seconds must be positive")


@dataclass(frozen=True)
class RemoteVisionConfig:
    """OpenAI-compatible chat-completions endpoint with image input."""
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "qwen/qwen-2.5-vl-72b-instruct"
    max_tokens: int = 1024
    temperature: float = 0.1
    timeout: float = 30.0
    retry_count: int = 1
    retry_delay: float = 5.0
    cost_per_request: float = 0.005
    api_key: str = field(default="", repr=False)

    def __post_init__(self):
        if self.timeout <= 0:
            raise ConfigurationError("remote_vision.timeout must be positive")
        if self.retry_count < 0:
            raise ConfigurationError("remote_vision.retry_count cannot be negative")
        if self.retry_delay < 0:
            raise ConfigurationError("remote_vision.retry_delay cannot be negative")


@dataclass(frozen=True)
class LocalAnalyzerConfig:
    text_similarity_threshold: float = 0.6
    position_threshold: float = 150.0  # pixels
    max_candidates: int = 10
    best_match_floor: float = 0.5
    timeout: float = 2.0

    def __post_init__(self):
        if self.max_candidates < 1:
            raise ConfigurationError("local_analyzer.max_candidates must be at least 1")
        if self.position_threshold <= 0:
            raise ConfigurationError("local_analyzer.position_threshold must be positive")
        if self.timeout <= 0:
            raise ConfigurationError("local_analyzer.timeout must be positive")


@dataclass(frozen=True)
class HealingConfig:
    """Full healing configuration."""
    enabled: bool = True
    cache_enabled: bool = True
    local_enabled: bool = True
    remote_enabled: bool = False  # needs an API key
    confidence: ConfidencePolicy = field(default_factory=ConfidencePolicy)
    cache: HealingCacheConfig = field(default_factory=HealingCacheConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    remote_vision: RemoteVisionConfig = field(default_factory=RemoteVisionConfig)
    local_analyzer: LocalAnalyzerConfig = field(default_factory=LocalAnalyzerConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HealingConfig':
        """Build from a nested dict, e.g. the ``healing`` section of config.yaml."""
        return build_healing_config(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'cache_enabled': self.cache_enabled,
            'local_enabled': self.local_enabled,
            'remote_enabled': self.remote_enabled,
            'confidence': self.confidence.to_dict(),
            'cache': dict(self.cache.__dict__),
            'rate_limit': dict(self.rate_limit.__dict__),
            'remote_vision': {k: v for k, v in self.remote_vision.__dict__.items() if k != 'api_key'},
            'local_analyzer': dict(self.local_analyzer.__dict__),
        }


_SECTIONS = {
    'confidence': ConfidencePolicy,
    'cache': HealingCacheConfig,
    'rate_limit': RateLimitConfig,
    'remote_vision': RemoteVisionConfig,
    'local_analyzer': LocalAnalyzerConfig,
}


def _merge_section(current, overrides: Dict[str, Any], section: str):
    allowed = {f.name for f in fields(current)}
    unknown = set(overrides) - allowed
    if unknown:
        raise ConfigurationError(f"Unknown {section} settings: {sorted(unknown)}")
    try:
        return replace(current, **overrides)
    except TypeError as e:
        raise ConfigurationError(f"Invalid {section} settings: {e}")


def build_healing_config(
    overrides: Optional[Dict[str, Any]] = None,
    base: Optional[HealingConfig] = None
) -> HealingConfig:
    """
    Merge partial overrides onto a base configuration.

    Args:
        overrides: Nested dict; top-level toggles plus any section dicts
        base: Configuration to merge onto (defaults to HealingConfig())

    Returns:
        Validated, immutable HealingConfig

    Raises:
        ConfigurationError: on unknown keys or invalid values
    """
    config = base if base is not None else HealingConfig()
    overrides = dict(overrides or {})

    section_values = {}
    for section in _SECTIONS:
        if section in overrides:
            value = overrides.pop(section) or {}
            if not isinstance(value, dict):
                raise ConfigurationError(f"Section {section} must be a mapping")
            section_values[section] = _merge_section(getattr(config, section), value, section)

    toggles = {'enabled', 'cache_enabled', 'local_enabled', 'remote_enabled'}
    unknown = set(overrides) - toggles
    if unknown:
        raise ConfigurationError(f"Unknown healing settings: {sorted(unknown)}")

    for name, value in overrides.items():
        if not isinstance(value, bool):
            raise ConfigurationError(f"healing.{name} must be true or false, got {value!r}")

    return replace(config, **overrides, **section_values)


# Element kind hints for the vision prompt
ELEMENT_KIND_HINTS = {
    'click': 'button or link',
    'input': 'input field or textarea',
    'type': 'input field or textarea',
    'select': 'dropdown or select',
    'hover': 'any interactive element',
    'keydown': 'input field',
}

DEFAULT_ELEMENT_KIND_HINT = 'interactive element'

VISION_PROMPT_TEMPLATE = """Analyze this webpage screenshot.

TASK: Find the element that matches this description:
- Action: {action}
- Failed selector: {selector}
- Element type: {element_type}
- Expected label: "{label}"
- Last known position: {position}

Return ONLY this JSON (no markdown, no explanation):
{{
  "found": true/false,
  "confidence": 0-100,
  "bounding_box": {{ "x": number, "y": number, "width": number, "height": number }},
  "element_type": "button" | "input" | "link" | "select" | "other",
  "text_content": "visible text on element",
  "reasoning": "brief explanation of why this element matches",
  "suggested_selectors": ["selector1", "selector2"]
}}

CRITICAL: Return ONLY valid JSON, no markdown formatting."""
