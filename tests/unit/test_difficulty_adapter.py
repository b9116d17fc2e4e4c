"""
Unit Tests for Difficulty Adapter

Tests the one-step downgrade applied to struggling students.
"""

import pytest
import sys
import os

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "adaptive_tutor_core", "src"))

from adaptive_tutor_core.difficulty_adapter import DifficultyAdapter, DifficultyAdjustment
from adaptive_tutor_core.tutor_state import StudentLevel, TutorSessionState


def make_state(level: StudentLevel, answers):
    state = TutorSessionState(session_id="tutor:u1:abc", user_id="u1", topic="NLP", student_level=level)
    state.current_concept = "Tokenization"
    for correct in answers:
        state.record_answer(correct)
    return state


class TestDifficultyAdapter:
    """Test suite for DifficultyAdapter."""

    @pytest.fixture
    def adapter(self):
        """Create adapter instance."""
        return DifficultyAdapter()

    def test_decrease_after_three_wrong(self, adapter):
        """Test stepping down one level after three wrong answers in a row."""
        state = make_state(StudentLevel.ADVANCED, [True, False, False, False])
        adjustment = adapter.check_adjustment(state)

        assert adjustment.should_adjust is True
        assert adjustment.new_level == StudentLevel.INTERMEDIATE
        assert "No correct answers" in adjustment.reason

    def test_maintain_with_recent_correct(self, adapter):
        """Test no change when one of the last three was correct."""
        state = make_state(StudentLevel.INTERMEDIATE, [False, False, True])
        adjustment = adapter.check_adjustment(state)
        assert adjustment.should_adjust is False
        assert adjustment.new_level is None

    def test_insufficient_data(self, adapter):
        """Test fewer than three answers never counts as struggling."""
        state = make_state(StudentLevel.ADVANCED, [False, False])
        adjustment = adapter.check_adjustment(state)
        assert adjustment.should_adjust is False
        assert "Not struggling" in adjustment.reason

    def test_boundary_beginner(self, adapter):
        """Test beginner is the floor."""
        state = make_state(StudentLevel.BEGINNER, [False, False, False])
        adjustment = adapter.check_adjustment(state)
        assert adjustment.should_adjust is False
        assert adjustment.reason == "Already at beginner level"

    def test_never_increases(self, adapter):
        """Test perfect performance never raises the level."""
        state = make_state(StudentLevel.BEGINNER, [True] * 10)
        assert adapter.check_adjustment(state).should_adjust is False

    def test_apply_adjustment(self, adapter):
        state = make_state(StudentLevel.INTERMEDIATE, [False, False, False])
        adjustment = adapter.check_adjustment(state)

        assert adapter.apply_adjustment(state, adjustment) is True
        assert state.student_level == StudentLevel.BEGINNER

    def test_apply_noop(self, adapter):
        state = make_state(StudentLevel.ADVANCED, [])
        assert adapter.apply_adjustment(state, DifficultyAdjustment(should_adjust=False, reason="stable")) is False
        assert state.student_level == StudentLevel.ADVANCED


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
