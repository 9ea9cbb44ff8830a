"""Bounded in-memory caches.

The cache manager keeps five independent mappings: parsed templates, tasks,
checklists, prompts and per-workflow scratch state. Each is capped; once a
mapping grows past its cap it is trimmed to the most recently *inserted* half.
This is insertion-order trimming, not an LRU: reading an entry never
refreshes it.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Generic, TypeVar

__all__ = ["BoundedCache", "CacheManager"]

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 100

V = TypeVar("V")


class BoundedCache(Generic[V]):
    """A dict capped at ``max_size`` entries, halved on overflow.

    Example:
        >>> cache = BoundedCache[str]("templates", max_size=4)
        >>> for i in range(5):
        ...     cache.set(str(i), "x")
        >>> list(cache.keys())
        ['3', '4']
    """

    def __init__(self, name: str, max_size: int = DEFAULT_MAX_SIZE) -> None:
        """Initialize an empty cache.

        Args:
            name: Name used in statistics and logs.
            max_size: Maximum number of entries before trimming.
        """
        self.name = name
        self.max_size = max_size
        self._data: dict[str, V] = {}

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def keys(self) -> list[str]:
        return list(self._data)

    def get(self, key: str, default: V | None = None) -> V | None:
        return self._data.get(key, default)

    def set(self, key: str, value: V) -> None:
        """Store a value; an existing key keeps its insertion position."""
        self._data[key] = value
        self.trim()

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def clear(self) -> None:
        self._data.clear()

    def trim(self) -> int:
        """Trim to the most recently inserted half once over the cap.

        Returns:
            Number of entries evicted; zero when at or below the cap.
        """
        if len(self._data) <= self.max_size:
            return 0
        keep = self.max_size // 2
        keys = list(self._data)
        evicted = keys[: len(keys) - keep]
        for key in evicted:
            del self._data[key]
        logger.debug("Trimmed %s cache: evicted %d, kept %d", self.name, len(evicted), keep)
        return len(evicted)


def _default_workflow_state() -> dict[str, Any]:
    return {
        "completedOutputs": [],
        "currentStep": 1,
        "dependenciesMet": True,
        "sharedData": {},
        "corrections": [],
        "notes": [],
    }


class CacheManager:
    """Owns the five bounded caches of one orchestrator instance.

    Attributes:
        templates: Loaded template text by template name.
        tasks: Loaded task definitions by task name.
        checklists: Loaded checklists by name.
        prompts: Built prompts by cache key.
        workflow_state: Scratch state per workflow id.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE) -> None:
        """Initialize the caches.

        Args:
            max_size: Cap applied to each of the five caches.
        """
        self.templates: BoundedCache[str] = BoundedCache("template", max_size)
        self.tasks: BoundedCache[Any] = BoundedCache("task", max_size)
        self.checklists: BoundedCache[Any] = BoundedCache("checklist", max_size)
        self.prompts: BoundedCache[str] = BoundedCache("prompt", max_size)
        self.workflow_state: BoundedCache[dict[str, Any]] = BoundedCache("workflow_state", max_size)

    @property
    def caches(self) -> tuple[BoundedCache[Any], ...]:
        return (self.templates, self.tasks, self.checklists, self.prompts, self.workflow_state)

    def get_workflow_state(self, workflow_id: str) -> dict[str, Any]:
        """Return scratch state for a workflow, creating the default on first use."""
        state = self.workflow_state.get(workflow_id)
        if state is None:
            state = _default_workflow_state()
            self.workflow_state.set(workflow_id, state)
        return state

    def update_workflow_state(self, workflow_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Shallow-merge updates into a workflow's scratch state."""
        state = {**self.get_workflow_state(workflow_id), **copy.deepcopy(updates)}
        self.workflow_state.set(workflow_id, state)
        return state

    def add_agent_output(self, workflow_id: str, agent_id: str, output: Any) -> dict[str, Any]:
        """Record an agent's output in the workflow's scratch state and bump its step."""
        state = self.get_workflow_state(workflow_id)
        outputs = [*state["completedOutputs"], {"agentId": agent_id, "output": output}]
        return self.update_workflow_state(
            workflow_id,
            {"completedOutputs": outputs, "currentStep": state["currentStep"] + 1},
        )

    def clear_workflow_state(self, workflow_id: str) -> None:
        self.workflow_state.delete(workflow_id)

    def clear(self) -> None:
        """Empty every cache."""
        for cache in self.caches:
            cache.clear()

    def stats(self) -> dict[str, Any]:
        """Return per-cache sizes and caps."""
        return {cache.name: {"size": len(cache), "maxSize": cache.max_size} for cache in self.caches}
