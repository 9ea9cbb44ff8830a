"""Configuration for litestar-agentflow.

Two layers of configuration exist:

- :class:`ConfigurationManager` loads the system configuration file
  (``.bmad-core/core-config.yaml`` under the project root) once at startup,
  deep-merges it over built-in defaults and validates it. Failure is fatal.
- :class:`EngineConfig` holds the engine's runtime knobs (timeouts, retry
  policy, batch width, elicitation wait limits).
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from litestar_agentflow.exceptions import ConfigurationError

__all__ = [
    "CONFIG_RELATIVE_PATH",
    "DEFAULT_CONFIG",
    "REQUIRED_FIELDS",
    "ConfigurationManager",
    "EngineConfig",
    "deep_merge",
]

logger = logging.getLogger(__name__)

CONFIG_RELATIVE_PATH = Path(".bmad-core") / "core-config.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "markdownExploder": True,
    "prd": {
        "prdFile": "docs/prd.md",
        "prdVersion": "v4",
        "prdSharded": True,
        "prdShardedLocation": "docs/prd",
        "epicFilePattern": "epic-{n}*.md",
    },
    "architecture": {
        "architectureFile": "docs/architecture.md",
        "architectureVersion": "v4",
        "architectureSharded": True,
        "architectureShardedLocation": "docs/architecture",
    },
    "devLoadAlwaysFiles": [
        "docs/architecture/coding-standards.md",
        "docs/architecture/tech-stack.md",
        "docs/architecture/source-tree.md",
    ],
    "devDebugLog": ".ai/debug-log.md",
    "devStoryLocation": "docs/stories",
    "slashPrefix": "BMad",
    "bmadCore": {
        "agents": ".bmad-core/agents",
        "tasks": ".bmad-core/tasks",
        "templates": ".bmad-core/templates",
        "workflows": ".bmad-core/workflows",
        "checklists": ".bmad-core/checklists",
        "data": ".bmad-core/data",
    },
    "system": {
        "contextOptimization": True,
        "freshChatForPhases": ["SM", "Dev", "QA"],
        "commandPrefix": "*",
        "elicitationOptions": 9,
        "mandatoryElicitationFormat": True,
    },
}
"""Built-in defaults the configuration file is merged over."""

REQUIRED_FIELDS: tuple[str, ...] = (
    "prd.prdFile",
    "architecture.architectureFile",
    "devStoryLocation",
    "slashPrefix",
)
"""Dotted paths that must resolve to a non-empty value after merging."""


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` over ``base`` without mutating either.

    Nested mappings are merged key by key; every other value in ``override``
    (lists included) replaces the value in ``base``.

    Args:
        base: The defaults.
        override: The values that win.

    Returns:
        A new merged dictionary.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _lookup(data: dict[str, Any], dotted: str) -> Any:
    current: Any = data
    for part in dotted.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


class ConfigurationManager:
    """Loads, validates and exposes the system configuration.

    Attributes:
        root: Project root the configuration and resource paths are relative to.
        config_path: Location of the configuration file.

    Example:
        >>> manager = ConfigurationManager("/srv/project")
        >>> config = manager.load()
        >>> manager.resource_path("templates")
        PosixPath('/srv/project/.bmad-core/templates')
    """

    def __init__(self, root: str | Path, config_path: str | Path | None = None) -> None:
        """Initialize the manager.

        Args:
            root: Project root directory.
            config_path: Override for the configuration file location.
        """
        self.root = Path(root)
        self.config_path = Path(config_path) if config_path else self.root / CONFIG_RELATIVE_PATH
        self._config: dict[str, Any] | None = None

    @property
    def is_loaded(self) -> bool:
        return self._config is not None

    @property
    def config(self) -> dict[str, Any]:
        """The merged configuration.

        Raises:
            ConfigurationError: If accessed before :meth:`load`.
        """
        if self._config is None:
            msg = "Configuration accessed before it was loaded"
            raise ConfigurationError(msg)
        return self._config

    def load(self) -> dict[str, Any]:
        """Load the configuration file and merge it over the defaults.

        Returns:
            The merged, validated configuration.

        Raises:
            ConfigurationError: If the file is missing, is not valid YAML,
                is not a mapping, or lacks a required field.
        """
        if not self.config_path.is_file():
            msg = "Configuration file not found"
            raise ConfigurationError(msg, str(self.config_path))
        try:
            raw = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            msg = f"Invalid YAML in configuration file: {exc}"
            raise ConfigurationError(msg, str(self.config_path)) from exc
        except OSError as exc:
            msg = f"Failed to read configuration file: {exc}"
            raise ConfigurationError(msg, str(self.config_path)) from exc

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            msg = "Configuration file must contain a mapping"
            raise ConfigurationError(msg, str(self.config_path))

        merged = deep_merge(DEFAULT_CONFIG, raw)
        self.validate(merged)
        self._config = merged
        logger.info("Loaded configuration from %s", self.config_path)
        return merged

    def validate(self, config: dict[str, Any]) -> None:
        """Validate a merged configuration.

        Args:
            config: The merged configuration.

        Raises:
            ConfigurationError: If a required field is missing.
        """
        missing = [name for name in REQUIRED_FIELDS if not _lookup(config, name)]
        if missing:
            msg = f"Missing required configuration fields: {', '.join(missing)}"
            raise ConfigurationError(msg, str(self.config_path))

        for name, value in self._iter_paths(config):
            if "\\" in value:
                logger.warning("Configuration path %s uses backslashes: %s", name, value)

    def _iter_paths(self, config: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
        found: list[tuple[str, str]] = []
        for key, value in config.items():
            name = f"{prefix}.{key}" if prefix else key
            if isinstance(value, dict):
                found.extend(self._iter_paths(value, name))
            elif isinstance(value, str) and ("/" in value or "\\" in value):
                found.append((name, value))
        return found

    def get(self, dotted: str, default: Any = None) -> Any:
        """Read a value by dotted path, e.g. ``prd.prdFile``."""
        value = _lookup(self.config, dotted)
        return default if value is None else value

    def resource_path(self, kind: str) -> Path:
        """Resolve a core resource directory (agents, tasks, templates, ...)."""
        relative = self.get(f"bmadCore.{kind}")
        if not relative:
            msg = f"Unknown core resource kind '{kind}'"
            raise ConfigurationError(msg)
        return self.root / relative

    @property
    def prd_path(self) -> Path:
        return self.root / self.get("prd.prdFile")

    @property
    def architecture_path(self) -> Path:
        return self.root / self.get("architecture.architectureFile")

    @property
    def story_location(self) -> Path:
        return self.root / self.get("devStoryLocation")

    @property
    def dev_load_always_files(self) -> list[Path]:
        return [self.root / name for name in self.get("devLoadAlwaysFiles", [])]


@dataclass
class EngineConfig:
    """Runtime options for the step execution engine.

    Attributes:
        checkpoint_enabled: Create a checkpoint before every agent step.
        min_timeout: Lower clamp for agent timeouts, in seconds.
        default_timeout: Timeout used when a step declares none, in seconds.
        max_timeout: Upper clamp for agent timeouts, in seconds.
        retry_base_delay: Base delay of the backoff, in seconds.
        retry_max_delay: Cap of the backoff delay, in seconds.
        max_retry_attempts: Attempts for strategies without their own limit.
        batch_size: Width of bounded concurrent batches.
        elicitation_timeout: Default wait for a user response, in seconds.
        stale_wait_age: Age after which the sweep drops a wait slot, in seconds.
        max_checkpoints: Checkpoints kept in memory per workflow.
        message_retention_hours: Age after which message history is cleaned up.
    """

    checkpoint_enabled: bool = True
    min_timeout: float = 10.0
    default_timeout: float = 120.0
    max_timeout: float = 300.0
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    max_retry_attempts: int = 3
    batch_size: int = 5
    elicitation_timeout: float = 300.0
    stale_wait_age: float = 600.0
    max_checkpoints: int = 10
    message_retention_hours: float = 24.0

    def clamp_timeout(self, timeout: float | None) -> float:
        """Clamp a requested timeout into ``[min_timeout, max_timeout]``."""
        requested = self.default_timeout if timeout is None else timeout
        return max(self.min_timeout, min(requested, self.max_timeout))
