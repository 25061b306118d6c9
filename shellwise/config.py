"""
Configuration Loader

Reads config/shellwise.yaml and fills anything missing from in-code
defaults. String values may reference the environment as ``${VAR}`` or
``${VAR:-default}``.
"""

import os
import re
import yaml
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

from shellwise.llm.provider_config import get_default_llm_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/shellwise.yaml"

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


class ConfigError(Exception):
    """Raised when a config file exists but cannot be used."""


def expand_env_vars(value: Any) -> Any:
    """Expand ``${VAR}`` and ``${VAR:-default}`` recursively through lists and dicts."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(
            lambda m: os.environ.get(m.group(1), m.group(2) if m.group(2) is not None else ""),
            value
        )
    if isinstance(value, dict):
        return {key: expand_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


@dataclass
class ShellwiseConfig:
    """Settings for every shellwise component."""
    llm: Dict[str, Any] = field(default_factory=get_default_llm_config)

    # Security: overrides merged over the stock policy, optional pattern file
    policy_file: Optional[str] = None
    policy_overrides: Dict[str, Any] = field(default_factory=dict)
    dangerous_patterns_file: Optional[str] = None

    # Analysis: extra output matchers
    matchers_file: Optional[str] = None

    # Orchestrator
    approval_timeout: float = 30.0
    kill_grace_period: float = 5.0

    # History
    max_entries_per_session: int = 10000
    avoid_after_failures: int = 3
    pattern_interval: float = 3600.0
    learning_interval: float = 1800.0
    history_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[str] = None) -> "ShellwiseConfig":
        """Build from a parsed config mapping; relative file paths resolve against ``base_dir``."""
        config = cls()
        llm = data.get('llm') or {}
        config.llm.update(llm)

        security = data.get('security') or {}
        config.policy_file = security.get('policy_file')
        config.policy_overrides = dict(security.get('policy') or {})
        config.dangerous_patterns_file = security.get('dangerous_patterns_file')

        config.matchers_file = (data.get('analysis') or {}).get('matchers_file')

        orchestrator = data.get('orchestrator') or {}
        config.approval_timeout = float(orchestrator.get('approval_timeout', config.approval_timeout))
        config.kill_grace_period = float(orchestrator.get('kill_grace_period', config.kill_grace_period))

        history = data.get('history') or {}
        config.max_entries_per_session = int(history.get('max_entries_per_session',
                                                         config.max_entries_per_session))
        config.avoid_after_failures = int(history.get('avoid_after_failures', config.avoid_after_failures))
        config.pattern_interval = float(history.get('pattern_interval', config.pattern_interval))
        config.learning_interval = float(history.get('learning_interval', config.learning_interval))
        config.history_file = history.get('history_file') or None

        if base_dir:
            for name in ('policy_file', 'dangerous_patterns_file', 'matchers_file'):
                value = getattr(config, name)
                if value and not os.path.isabs(value):
                    setattr(config, name, os.path.join(base_dir, value))
        return config


def load_config(path: str = DEFAULT_CONFIG_PATH) -> ShellwiseConfig:
    """
    Load configuration from YAML.

    Args:
        path: Config file; defaults are used when it does not exist

    Returns:
        ShellwiseConfig

    Raises:
        ConfigError: If the file cannot be parsed or has the wrong shape
    """
    if not os.path.exists(path):
        logger.warning(f"Config not found: {path}, using defaults")
        return ShellwiseConfig()

    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config {path}: {e}") from e

    if data is None:
        return ShellwiseConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping, got {type(data).__name__}")

    try:
        config = ShellwiseConfig.from_dict(expand_env_vars(data), os.path.dirname(path))
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigError(f"Invalid value in {path}: {e}") from e

    logger.info(f"Loaded config from {path}")
    return config
