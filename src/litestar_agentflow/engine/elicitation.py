"""Elicitation request preparation and response normalization.

When a workflow pauses for human input the user is either shown a numbered
menu (option 1 proceeds as instructed, options 2-9 apply an elicitation
method) or asked a plain free-text question. Which of the two is used is
decided by an ordered rule chain; the order is part of the contract.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from litestar_agentflow.exceptions import InvalidElicitationSelectionError

if TYPE_CHECKING:
    from litestar_agentflow.config import ConfigurationManager
    from litestar_agentflow.core.models import ElicitationDetails

__all__ = [
    "FALLBACK_METHODS",
    "METHOD_SELECTION_RULES",
    "MINIMAL_METHODS",
    "ElicitationHandler",
    "ElicitationMethod",
    "ElicitationResponse",
    "parse_elicitation_methods",
]

logger = logging.getLogger(__name__)

METHODS_FILE = "elicitation-methods.md"
MAX_MENU_METHODS = 8
PROCEED = "proceed"

MODE_METHOD_SELECTION = "method_selection"
MODE_FREE_TEXT = "free_text"


@dataclass(frozen=True)
class ElicitationMethod:
    """A technique the user can pick from the numbered menu."""

    id: str
    title: str
    description: str = ""


FALLBACK_METHODS: tuple[ElicitationMethod, ...] = (
    ElicitationMethod("clarify", "Clarify Requirements", "Ask clarifying questions about unclear requirements"),
    ElicitationMethod("alternative", "Explore Alternatives", "Consider alternative approaches and solutions"),
    ElicitationMethod("breakdown", "Break Down Complex Items", "Decompose complex items into smaller parts"),
    ElicitationMethod("validate", "Validate Assumptions", "Check and validate underlying assumptions"),
    ElicitationMethod("research", "Research Best Practices", "Look into industry standards and best practices"),
    ElicitationMethod("dependencies", "Identify Dependencies", "Map out dependencies and relationships"),
    ElicitationMethod("optimize", "Optimize Approach", "Find ways to improve efficiency or quality"),
    ElicitationMethod("review", "Stakeholder Review", "Consider different stakeholder perspectives"),
)
"""Methods offered when no configuration is available."""

MINIMAL_METHODS: tuple[ElicitationMethod, ...] = (
    ElicitationMethod(PROCEED, "Proceed", "Continue with the current approach"),
    ElicitationMethod("clarify", "Clarify", "Ask for clarification"),
)
"""Methods offered when the configured methods file cannot be read."""


def _has(value: str | None, needle: str) -> bool:
    return needle in (value or "").lower()


def _explicit_override(details: ElicitationDetails) -> bool | None:
    return details.requires_method_selection


def _create_doc_section(details: ElicitationDetails) -> bool | None:
    command = (details.command or "").lower()
    if command == "create-doc" or (details.section_id and details.instruction and "create" in command):
        return True
    return None


def _structured_template(details: ElicitationDetails) -> bool | None:
    if _has(details.command, "-tmpl") or _has(details.command, "elicitation") or _has(details.uses, "-tmpl"):
        return True
    return None


def _markdown_template(details: ElicitationDetails) -> bool | None:
    if _has(details.command, "document-project") or (details.uses or "").lower().endswith(".md"):
        return False
    return None


def _select_instruction(details: ElicitationDetails) -> bool | None:
    if _has(details.instruction, "select 1-9"):
        return True
    return None


def _structured_context(details: ElicitationDetails) -> bool | None:
    if details.section_id and details.agent_id:
        return True
    return None


METHOD_SELECTION_RULES: tuple[tuple[str, Callable[[ElicitationDetails], bool | None]], ...] = (
    ("explicit_override", _explicit_override),
    ("create_doc_section", _create_doc_section),
    ("structured_template", _structured_template),
    ("markdown_template", _markdown_template),
    ("select_instruction", _select_instruction),
    ("structured_context", _structured_context),
)
"""Ordered (name, rule) pairs; the first rule returning a boolean decides."""


def parse_elicitation_methods(text: str) -> list[ElicitationMethod]:
    """Parse the elicitation methods markdown file.

    A line starting with ``**Title**`` opens a method; following ``- `` lines
    are joined into its description.

    Args:
        text: The markdown content.

    Returns:
        Methods in file order.
    """
    methods: list[ElicitationMethod] = []
    title: str | None = None
    description: list[str] = []

    def flush() -> None:
        if title:
            method_id = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
            methods.append(ElicitationMethod(method_id, title, " ".join(description)))

    for line in text.splitlines():
        stripped = line.strip()
        heading = re.match(r"^\*\*(.+?)\*\*", stripped)
        if heading:
            flush()
            title = heading.group(1).strip()
            description = []
        elif title and stripped.startswith("- "):
            description.append(stripped[2:].strip())
    flush()
    return methods


@dataclass(frozen=True)
class ElicitationResponse:
    """A normalized user answer.

    Attributes:
        mode: ``method_selection`` or ``free_text``.
        method: Selected method id, ``proceed``, or ``user_input`` for free text.
        response: The answer passed on to the agent.
        method_title: Title of the selected method, if any.
        selection: The option number picked, if numbered.
    """

    mode: str
    method: str
    response: str
    method_title: str | None = None
    selection: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "method": self.method,
            "response": self.response,
            "methodTitle": self.method_title,
            "selection": self.selection,
        }


class ElicitationHandler:
    """Decides the elicitation mode, prepares requests and normalizes answers.

    Attributes:
        config: Configuration manager used to locate the methods file, if any.
    """

    def __init__(self, config: ConfigurationManager | None = None) -> None:
        """Initialize the handler.

        Args:
            config: Loaded configuration manager. Without one the built-in
                fallback methods are offered.
        """
        self.config = config
        self._methods: list[ElicitationMethod] | None = None

    def load_methods(self) -> list[ElicitationMethod]:
        """Load elicitation methods once and memoize them."""
        if self._methods is not None:
            return self._methods
        if self.config is None or not self.config.is_loaded:
            self._methods = list(FALLBACK_METHODS)
            return self._methods

        path = self.config.resource_path("data") / METHODS_FILE
        try:
            methods = parse_elicitation_methods(path.read_text(encoding="utf-8"))
        except OSError as exc:
            logger.warning("Could not load elicitation methods from %s: %s", path, exc)
            methods = []
        self._methods = methods or list(MINIMAL_METHODS)
        return self._methods

    def should_use_method_selection(self, details: ElicitationDetails) -> bool:
        """Decide between a numbered menu and a free-text question.

        Args:
            details: The pending elicitation.

        Returns:
            True for numbered selection, False for free text.
        """
        for name, rule in METHOD_SELECTION_RULES:
            decision = rule(details)
            if decision is not None:
                logger.debug("Elicitation mode decided by rule %s: %s", name, decision)
                return decision
        return False

    def prepare_request(self, details: ElicitationDetails, agent_name: str | None = None) -> dict[str, Any]:
        """Build the request shown to the user.

        Args:
            details: The pending elicitation.
            agent_name: Display name of the asking agent.

        Returns:
            A ``method_selection_elicitation`` request with numbered options,
            or a ``natural_text_elicitation`` question.
        """
        if self.should_use_method_selection(details):
            methods = self.load_methods()[:MAX_MENU_METHODS]
            options = [{"number": 1, "text": "Proceed as instructed", "value": PROCEED}]
            options.extend(
                {"number": index + 2, "text": f"{method.title}: {method.description}", "value": method.id}
                for index, method in enumerate(methods)
            )
            return {
                "type": "method_selection_elicitation",
                "title": f"Elicitation for: {details.section_title}",
                "instruction": details.instruction,
                "sectionId": details.section_id,
                "options": options,
                "requiresNumberedSelection": True,
                "acceptsFreeText": True,
            }
        return {
            "type": "natural_text_elicitation",
            "title": f"Question from {agent_name or 'Agent'}",
            "instruction": details.instruction or details.section_title,
            "sectionId": details.section_id,
            "expectsTextResponse": True,
            "requiresNumberedSelection": False,
            "acceptsFreeText": True,
        }

    def process_response(self, response: Any) -> ElicitationResponse:
        """Normalize a user answer.

        Numbers 1-9, given as ints or as their exact decimal string, resolve
        as menu selections. Everything else is passed through as free text.

        Args:
            response: An int, a string, or a mapping with ``selection`` or ``text``.

        Returns:
            The normalized response.

        Raises:
            InvalidElicitationSelectionError: If a number from 2-9 has no
                loaded method behind it.
        """
        if isinstance(response, Mapping):
            if response.get("selection") is not None:
                response = response["selection"]
            elif response.get("text") is not None:
                response = response["text"]
            else:
                response = json.dumps(dict(response))

        selection = self._as_selection(response)
        if selection is None:
            return ElicitationResponse(mode=MODE_FREE_TEXT, method="user_input", response=str(response))

        if selection == 1:
            return ElicitationResponse(mode=MODE_METHOD_SELECTION, method=PROCEED, response=PROCEED, selection=1)

        methods = self.load_methods()[:MAX_MENU_METHODS]
        index = selection - 2
        if index >= len(methods):
            raise InvalidElicitationSelectionError(selection)
        method = methods[index]
        return ElicitationResponse(
            mode=MODE_METHOD_SELECTION,
            method=method.id,
            response=f"Selected method: {method.title}",
            method_title=method.title,
            selection=selection,
        )

    @staticmethod
    def _as_selection(response: Any) -> int | None:
        if isinstance(response, bool):
            return None
        if isinstance(response, int):
            number = response
        elif isinstance(response, str) and response.strip().isdigit() and str(int(response.strip())) == response.strip():
            number = int(response.strip())
        else:
            return None
        return number if 1 <= number <= 9 else None
