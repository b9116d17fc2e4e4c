"""
Difficulty Downgrade

A struggling student is moved down exactly one level. Levels never move up
automatically; a new session starts at whatever level the student chooses.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from adaptive_tutor_core.tutor_state import StudentLevel, TutorSessionState

logger = logging.getLogger(__name__)


@dataclass
class DifficultyAdjustment:
    """Result of difficulty adjustment check."""
    should_adjust: bool
    reason: str
    new_level: Optional[StudentLevel] = None


class DifficultyAdapter:
    """
    Downgrades difficulty when the last answers were all wrong.

    Algorithm:
    - Look at the last 3 performance entries (fewer than 3 means not struggling)
    - If none of them is correct and the level is above beginner, step down one level
    """

    DIFFICULTY_LEVELS = [StudentLevel.BEGINNER, StudentLevel.INTERMEDIATE, StudentLevel.ADVANCED]

    def check_adjustment(self, state: TutorSessionState) -> DifficultyAdjustment:
        """
        Check if difficulty should be lowered.

        Args:
            state: Current session state (performance log already updated)

        Returns:
            DifficultyAdjustment with recommendation
        """
        if not state.is_struggling:
            return DifficultyAdjustment(
                should_adjust=False,
                reason=f"Not struggling ({len(state.performance)} answers recorded)",
            )

        new_level = self._lower_difficulty(state.student_level)
        if new_level == state.student_level:
            return DifficultyAdjustment(should_adjust=False, reason="Already at beginner level")

        return DifficultyAdjustment(
            should_adjust=True,
            reason="No correct answers in the last 3 attempts",
            new_level=new_level,
        )

    def _lower_difficulty(self, current: StudentLevel) -> StudentLevel:
        """Lower difficulty level."""
        current_idx = self.DIFFICULTY_LEVELS.index(current)
        if current_idx > 0:
            return self.DIFFICULTY_LEVELS[current_idx - 1]
        return current  # Already at min

    def apply_adjustment(self, state: TutorSessionState, adjustment: DifficultyAdjustment) -> bool:
        """
        Apply a downgrade to the session state.

        Returns:
            True if the level changed, False otherwise
        """
        if not adjustment.should_adjust or adjustment.new_level is None:
            return False

        old_level = state.student_level
        state.student_level = adjustment.new_level
        logger.info(
            f"📊 [DifficultyAdapter] {state.session_id}: {old_level.value} → "
            f"{adjustment.new_level.value} ({adjustment.reason})"
        )
        return True
