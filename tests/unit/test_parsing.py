"""
Unit Tests for Structured Output Parsing
"""

import pytest
import sys
import os

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "adaptive_tutor_core", "src"))

from adaptive_tutor_core.parsing import Malformed, Parsed, parse_structured_block


class TestParseStructuredBlock:
    """Test suite for parse_structured_block."""

    def test_plain_json(self):
        result = parse_structured_block('{"correct": true, "feedback": "Nice"}')
        assert isinstance(result, Parsed)
        assert result.get("correct") is True
        assert result.get("feedback") == "Nice"

    def test_json_with_surrounding_text(self):
        """Test JSON embedded in prose is still found."""
        result = parse_structured_block('Here you go:\n{"mode": "retrieval"}\nHope that helps.')
        assert isinstance(result, Parsed)
        assert result.get("mode") == "retrieval"

    def test_fenced_json(self):
        result = parse_structured_block('```json\n{"understanding": "good"}\n```')
        assert isinstance(result, Parsed)
        assert result.get("understanding") == "good"

    def test_key_value_lines(self):
        """Test the key: value fallback with scalar coercion."""
        result = parse_structured_block("correct: false\nfeedback: Not quite\nscore: 0.5")
        assert isinstance(result, Parsed)
        assert result.get("correct") is False
        assert result.get("feedback") == "Not quite"
        assert result.get("score") == 0.5

    def test_invalid_json_is_malformed(self):
        result = parse_structured_block('{"correct": true, feedback}')
        assert isinstance(result, Malformed)
        assert "invalid JSON" in result.reason

    def test_non_object_json_is_malformed(self):
        result = parse_structured_block("```json\n[1, 2]\n```")
        assert isinstance(result, Malformed)

    def test_empty_and_free_text(self):
        """Test empty input and unstructured prose are both malformed."""
        assert isinstance(parse_structured_block(""), Malformed)
        prose = parse_structured_block("I think the student is right")
        assert isinstance(prose, Malformed)
        assert prose.raw_text == "I think the student is right"

    def test_missing_key_default(self):
        result = parse_structured_block('{"a": 1}')
        assert result.get("b", "fallback") == "fallback"
