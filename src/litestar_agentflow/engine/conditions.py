"""Step conditions and routing values.

Conditions are named predicates over a workflow's context. A step whose
condition evaluates false is skipped. Routing steps read their value from the
persisted routing decisions, falling back to a classification artifact and
finally to the conservative default.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from litestar_agentflow.core.definition import RoutingStep
    from litestar_agentflow.core.models import WorkflowContext

__all__ = [
    "CONDITIONS",
    "DEFAULT_ROUTE",
    "ENHANCEMENT_CLASSIFICATION",
    "classify_enhancement_scope",
    "evaluate_condition",
    "resolve_routing_value",
]

logger = logging.getLogger(__name__)

ENHANCEMENT_CLASSIFICATION = "enhancement_classification"
DEFAULT_ROUTE = "major_enhancement"

SINGLE_STORY = "single_story"
SMALL_FEATURE = "small_feature"
MAJOR_ENHANCEMENT = "major_enhancement"

SCOPE_KEYWORDS: dict[str, tuple[str, ...]] = {
    SINGLE_STORY: (
        "simple",
        "basic",
        "just",
        "only",
        "small",
        "quick",
        "minimal",
        "creating and deleting",
        "crud",
        "add and remove",
        "straightforward",
    ),
    SMALL_FEATURE: (
        "few features",
        "some functionality",
        "moderate",
        "medium",
        "authentication",
        "user management",
        "basic ui",
    ),
    MAJOR_ENHANCEMENT: (
        "complex",
        "advanced",
        "comprehensive",
        "full-featured",
        "enterprise",
        "microservices",
        "scalable",
        "distributed",
        "many features",
        "extensive",
    ),
}

CONDITIONS: dict[str, Callable[[WorkflowContext], bool]] = {
    "major_enhancement_path": lambda ctx: ctx.routing_decisions.get(ENHANCEMENT_CLASSIFICATION) == MAJOR_ENHANCEMENT,
    "documentation_inadequate": lambda ctx: ctx.routing_decisions.get("documentation_check") == "inadequate",
    "after_prd_creation": lambda ctx: ctx.has_artifact("prd.md"),
    "architecture_changes_needed": lambda ctx: ctx.routing_decisions.get("architecture_decision") == "needed",
    "po_checklist_issues": lambda ctx: ctx.routing_decisions.get("po_validation") == "issues_found",
    "enhancement_includes_ui_changes": lambda ctx: True,
}
"""Named step conditions. Unknown names evaluate true."""


def evaluate_condition(condition: str | None, context: WorkflowContext) -> bool:
    """Evaluate a named step condition.

    Args:
        condition: The condition name, or None for unconditional steps.
        context: The workflow context the condition reads.

    Returns:
        Whether the step should run.
    """
    if not condition:
        return True
    predicate = CONDITIONS.get(condition)
    if predicate is None:
        logger.debug("Unknown condition %r, treating as satisfied", condition)
        return True
    return predicate(context)


def _count(text: str, keywords: tuple[str, ...]) -> int:
    return sum(1 for keyword in keywords if re.search(rf"\b{re.escape(keyword)}\b", text))


def classify_enhancement_scope(text: str) -> str:
    """Classify a free-text project description by scope keywords.

    Example:
        >>> classify_enhancement_scope("Just a simple CRUD page")
        'single_story'
    """
    lowered = text.lower()
    single = _count(lowered, SCOPE_KEYWORDS[SINGLE_STORY])
    small = _count(lowered, SCOPE_KEYWORDS[SMALL_FEATURE])
    major = _count(lowered, SCOPE_KEYWORDS[MAJOR_ENHANCEMENT])
    logger.debug("Enhancement scope scores: single=%d small=%d major=%d", single, small, major)

    if single > 0 and single >= small and single >= major:
        return SINGLE_STORY
    if small > major:
        return SMALL_FEATURE
    if major > 0:
        return MAJOR_ENHANCEMENT
    return SMALL_FEATURE


def resolve_routing_value(step: RoutingStep, context: WorkflowContext) -> str:
    """Find the value a routing step routes on.

    Order: the persisted routing decision, then a classification artifact,
    then :data:`DEFAULT_ROUTE`. The resolved value is stored back into the
    routing decisions.
    """
    value = context.routing_decisions.get(step.based_on)
    if not value:
        artifact = next(
            (artifact for artifact in context.artifacts.values() if artifact.type == "classification"),
            None,
        )
        if artifact is not None:
            value = classify_enhancement_scope(artifact.content)
            logger.debug("Routing value %s derived from artifact %s", value, artifact.name)
        else:
            value = DEFAULT_ROUTE
            logger.debug("No routing decision for %s, defaulting to %s", step.based_on, value)
        context.routing_decisions[step.based_on] = value
    return value
