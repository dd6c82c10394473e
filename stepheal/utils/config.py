"""
Configuration Management

Handles loading and validation of configuration from YAML files.
"""

import logging
from pathlib import Path
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, Tuple

import yaml

from stepheal.automation.tiers import TierConfig, DEFAULT_TIER_CONFIG, build_tier_config
from stepheal.errors import ConfigurationError
from stepheal.self_healing.config import HealingConfig, build_healing_config, load_api_key
from stepheal.utils.logger import setup_logging

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


@dataclass(frozen=True)
class OrchestratorConfig:
    """Step execution settings."""
    inter_step_pause: float = 0.1  # seconds
    navigation_kinds: Tuple[str, ...] = ('open', 'navigate')

    def __post_init__(self):
        if self.inter_step_pause < 0:
            raise ConfigurationError("orchestrator.inter_step_pause cannot be negative")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = 'INFO'
    log_dir: Optional[str] = None
    colored: bool = True

    def __post_init__(self):
        if str(self.level).upper() not in LOG_LEVELS:
            raise ConfigurationError(f"logging.level must be one of {list(LOG_LEVELS)}, got {self.level!r}")
        if not isinstance(self.colored, bool):
            raise ConfigurationError(f"logging.colored must be true or false, got {self.colored!r}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""
    tiers: Tuple[TierConfig, ...] = DEFAULT_TIER_CONFIG
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    healing: HealingConfig = field(default_factory=HealingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        """
        Create Config from dictionary.

        Healing sections may be given at top level (``confidence``, ``cache``,
        ``rate_limit``, ``remote_vision``, ``local_analyzer``) or nested
        under ``healing``.

        Raises:
            ConfigurationError: on unknown keys or invalid values
        """
        data = dict(data or {})

        healing_data = dict(data.pop('healing', None) or {})
        for section in ('confidence', 'cache', 'rate_limit', 'remote_vision', 'local_analyzer'):
            if section in data:
                healing_data[section] = data.pop(section)

        orchestrator_data = dict(data.pop('orchestrator', None) or {})
        if 'navigation_kinds' in orchestrator_data:
            orchestrator_data['navigation_kinds'] = tuple(orchestrator_data['navigation_kinds'])

        tiers = data.pop('tiers', None)
        logging_data = data.pop('logging', None) or {}

        if data:
            raise ConfigurationError(f"Unknown configuration sections: {sorted(data)}")

        try:
            return cls(
                tiers=build_tier_config(tiers),
                orchestrator=OrchestratorConfig(**orchestrator_data),
                healing=build_healing_config(healing_data),
                logging=LoggingConfig(**logging_data),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert Config to dictionary."""
        return {
            'tiers': [t.to_dict() for t in self.tiers],
            'orchestrator': {
                'inter_step_pause': self.orchestrator.inter_step_pause,
                'navigation_kinds': list(self.orchestrator.navigation_kinds),
            },
            'healing': self.healing.to_dict(),
            'logging': dict(self.logging.__dict__),
        }


def load_config(config_path: Optional[str] = None, env_file: Optional[str] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, uses default locations.
        env_file: .env file consulted for the remote vision API key

    Returns:
        Config object with loaded settings.

    Raises:
        ConfigurationError: if the file contains invalid settings
    """
    # Default config paths
    if config_path is None:
        possible_paths = [
            Path('config/config.yaml'),
            Path.home() / '.config' / 'stepheal' / 'config.yaml',
            Path('/etc/stepheal/config.yaml'),
        ]
        for path in possible_paths:
            if path.exists():
                config_path = str(path)
                break

    config = Config()
    if config_path and Path(config_path).exists():
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
            config = Config.from_dict(data or {})

    if not config.healing.remote_vision.api_key:
        api_key = load_api_key(env_file)
        if api_key:
            config = _with_api_key(config, api_key)

    return config


def _with_api_key(config: Config, api_key: str) -> Config:
    remote = replace(config.healing.remote_vision, api_key=api_key)
    return replace(config, healing=replace(config.healing, remote_vision=remote))


def save_config(config: Config, config_path: str) -> None:
    """
    Save configuration to YAML file. The API key is never written.

    Args:
        config: Config object to save.
        config_path: Path to save the config file.
    """
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, 'w') as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)


def configure_logging(config: Config, force: bool = False) -> logging.Logger:
    """
    Set up logging from the ``logging`` section.

    Args:
        config: Loaded configuration
        force: Reconfigure even if logging was already set up

    Returns:
        Root logger instance
    """
    section = config.logging
    return setup_logging(level=section.level, log_dir=section.log_dir, colored=section.colored, force=force)
