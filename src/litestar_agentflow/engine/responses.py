"""Staged parsing of completion responses.

Completion replies are slow, occasionally malformed and sometimes wrapped in
chatty preambles. :class:`ResponseParser` runs them through explicit stages,
each logged with its outcome:

1. structure: reject empty content, truncate oversized content
2. json: parse the whole reply as JSON
3. fenced: parse the first fenced ```json block
4. keyword: match one of the caller's expected keywords
5. passthrough: keep the raw text

After extraction the content is checked for unfilled placeholders and
assistant artifacts, lightly auto-fixed, and given a confidence score.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

__all__ = ["ParsedResponse", "ResponseParser"]

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 50_000
MIN_CONTENT_LENGTH = 10

FENCED_JSON = re.compile(r"```(?:json)?\s*\n(.*?)\n?```", re.DOTALL | re.IGNORECASE)
PLACEHOLDERS = (
    re.compile(r"\[(?:TODO|TBD|PLACEHOLDER|INSERT[^\]]*)\]", re.IGNORECASE),
    re.compile(r"\{\{[^}]+\}\}"),
    re.compile(r"lorem ipsum", re.IGNORECASE),
)
AI_PREAMBLE = re.compile(
    r"^\s*(?:as an ai(?: language model)?[^.\n]*[.\n]|certainly!\s*|sure!\s*|here(?: is|'s) (?:the|your) [^:\n]*:\s*)",
    re.IGNORECASE,
)


@dataclass
class ParsedResponse:
    """Result of running a reply through the parser.

    Attributes:
        content: Cleaned text content.
        format: ``json``, ``markdown`` or ``text``.
        data: Parsed JSON value, if any stage produced one.
        keyword: Expected keyword matched by the keyword stage.
        is_valid: False when the reply cannot be used at all.
        errors: Reasons the reply is invalid.
        warnings: Non-fatal quality issues.
        confidence: Score from 0 to 1.
        stages: Ordered (stage, outcome) pairs.
    """

    content: str
    format: str = "text"
    data: Any = None
    keyword: str | None = None
    is_valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    confidence: float = 1.0
    stages: list[tuple[str, str]] = field(default_factory=list)

    @property
    def json_object(self) -> dict[str, Any] | None:
        return self.data if isinstance(self.data, dict) else None


class ResponseParser:
    """Explicit staged parser for completion replies.

    Example:
        >>> parsed = ResponseParser().parse('```json\\n{"decision": "needed"}\\n```')
        >>> parsed.json_object
        {'decision': 'needed'}
    """

    def __init__(self, max_content_length: int = MAX_CONTENT_LENGTH) -> None:
        self.max_content_length = max_content_length

    def parse(self, content: str | None, keywords: Sequence[str] = ()) -> ParsedResponse:
        """Run a reply through every stage.

        Args:
            content: Raw reply text.
            keywords: Expected values for the keyword stage, in priority order.

        Returns:
            The parsed response. Check ``is_valid`` before using it.
        """
        parsed = ParsedResponse(content=(content or "").strip())

        if not self._structure_stage(parsed):
            return self._finish(parsed)

        if self._json_stage(parsed) or self._fenced_stage(parsed):
            parsed.format = "json"
        elif keywords and self._keyword_stage(parsed, keywords):
            parsed.format = "text"
        else:
            self._record(parsed, "passthrough", "raw text kept")
            parsed.format = "markdown" if re.search(r"^#{1,6}\s|^[-*]\s", parsed.content, re.MULTILINE) else "text"

        self._content_checks(parsed)
        return self._finish(parsed)

    def _record(self, parsed: ParsedResponse, stage: str, outcome: str) -> None:
        parsed.stages.append((stage, outcome))
        logger.debug("Response stage %s: %s", stage, outcome)

    def _structure_stage(self, parsed: ParsedResponse) -> bool:
        if not parsed.content:
            parsed.is_valid = False
            parsed.errors.append("Empty response from completion service")
            self._record(parsed, "structure", "empty")
            return False
        if len(parsed.content) > self.max_content_length:
            parsed.content = parsed.content[: self.max_content_length]
            parsed.warnings.append(f"Response truncated to {self.max_content_length} characters")
            self._record(parsed, "structure", "truncated")
        else:
            self._record(parsed, "structure", "ok")
        return True

    def _json_stage(self, parsed: ParsedResponse) -> bool:
        if parsed.content[:1] not in "{[":
            self._record(parsed, "json", "skipped")
            return False
        try:
            parsed.data = json.loads(parsed.content)
        except json.JSONDecodeError as exc:
            self._record(parsed, "json", f"failed: {exc.msg}")
            return False
        self._record(parsed, "json", "parsed")
        return True

    def _fenced_stage(self, parsed: ParsedResponse) -> bool:
        match = FENCED_JSON.search(parsed.content)
        if match is None:
            self._record(parsed, "fenced", "no block")
            return False
        try:
            parsed.data = json.loads(match.group(1))
        except json.JSONDecodeError as exc:
            parsed.warnings.append("Fenced block is not valid JSON")
            self._record(parsed, "fenced", f"failed: {exc.msg}")
            return False
        self._record(parsed, "fenced", "parsed")
        return True

    def _keyword_stage(self, parsed: ParsedResponse, keywords: Sequence[str]) -> bool:
        lowered = parsed.content.lower()
        for keyword in keywords:
            if re.search(rf"(?<![\w-]){re.escape(keyword.lower())}(?![\w-])", lowered):
                parsed.keyword = keyword
                self._record(parsed, "keyword", f"matched {keyword}")
                return True
        self._record(parsed, "keyword", "no match")
        return False

    def _content_checks(self, parsed: ParsedResponse) -> None:
        fixed = AI_PREAMBLE.sub("", parsed.content, count=1).strip()
        if fixed != parsed.content and fixed:
            parsed.warnings.append("Removed assistant preamble")
            parsed.content = fixed
        if any(pattern.search(parsed.content) for pattern in PLACEHOLDERS):
            parsed.warnings.append("Response contains unfilled placeholders")
        if len(parsed.content) < MIN_CONTENT_LENGTH and parsed.keyword is None:
            parsed.warnings.append("Response is very short")
        self._record(parsed, "content", f"{len(parsed.warnings)} warning(s)")

    def _finish(self, parsed: ParsedResponse) -> ParsedResponse:
        score = 1.0 - 0.5 * len(parsed.errors) - 0.1 * len(parsed.warnings)
        parsed.confidence = round(min(1.0, max(0.0, score)), 2) if parsed.is_valid else 0.0
        return parsed
