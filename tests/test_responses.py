"""Tests for the staged response parser."""

from __future__ import annotations

import pytest

from litestar_agentflow.engine.responses import ResponseParser


@pytest.mark.unit
class TestResponseParser:
    """Tests for ResponseParser stages."""

    @pytest.mark.parametrize("content", [None, "", "   \n "])
    def test_empty_reply_is_invalid(self, content: str | None) -> None:
        parsed = ResponseParser().parse(content)

        assert parsed.is_valid is False
        assert parsed.confidence == 0.0
        assert parsed.stages == [("structure", "empty")]

    def test_whole_reply_json(self) -> None:
        parsed = ResponseParser().parse('{"type": "elicitation_required", "instruction": "Which database?"}')

        assert parsed.format == "json"
        assert parsed.json_object == {"type": "elicitation_required", "instruction": "Which database?"}
        assert ("json", "parsed") in parsed.stages

    def test_fenced_json_block(self) -> None:
        parsed = ResponseParser().parse('Here is my answer:\n```json\n{"decision": "needed"}\n```')

        assert parsed.json_object == {"decision": "needed"}
        assert ("fenced", "parsed") in parsed.stages

    def test_broken_fenced_block_warns(self) -> None:
        parsed = ResponseParser().parse("Result:\n```json\n{not json}\n```")

        assert parsed.data is None
        assert "Fenced block is not valid JSON" in parsed.warnings

    def test_keyword_stage_in_priority_order(self) -> None:
        parsed = ResponseParser().parse("The docs are not adequate, so: inadequate", keywords=["inadequate", "adequate"])

        assert parsed.keyword == "inadequate"

    def test_keyword_does_not_match_inside_words(self) -> None:
        parsed = ResponseParser().parse("Documentation is inadequate overall.", keywords=["adequate"])

        assert parsed.keyword is None
        assert ("keyword", "no match") in parsed.stages

    def test_markdown_passthrough(self) -> None:
        parsed = ResponseParser().parse("# Product Requirements\n\n- Goal one\n- Goal two")

        assert parsed.format == "markdown"
        assert parsed.is_valid is True
        assert parsed.confidence == 1.0

    def test_oversized_reply_is_truncated(self) -> None:
        parsed = ResponseParser(max_content_length=20).parse("x" * 50)

        assert len(parsed.content) == 20
        assert parsed.stages[0] == ("structure", "truncated")
        assert parsed.is_valid is True

    def test_preamble_is_removed(self) -> None:
        parsed = ResponseParser().parse("Certainly! The project goals are listed below in detail.")

        assert parsed.content == "The project goals are listed below in detail."
        assert "Removed assistant preamble" in parsed.warnings

    def test_placeholders_lower_confidence(self) -> None:
        parsed = ResponseParser().parse("The target users are [TODO] and the budget is {{budget}}.")

        assert "Response contains unfilled placeholders" in parsed.warnings
        assert parsed.confidence == 0.9

    def test_short_reply_warns(self) -> None:
        parsed = ResponseParser().parse("ok")

        assert "Response is very short" in parsed.warnings
