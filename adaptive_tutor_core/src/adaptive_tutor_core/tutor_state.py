"""
Tutor Session State Data Model

Dataclasses for a persisted tutoring session, plus the dict conversion used
to write them to (and read them back from) checkpoints.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from adaptive_tutor_core.errors import ValidationError

MAX_HISTORY_TURNS = 20
MASTERY_THRESHOLD = 80  # percent
MASTERY_MIN_QUESTIONS = 5
STRUGGLE_WINDOW = 3


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StudentLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class Phase(str, Enum):
    INTRODUCTION = "introduction"
    LEARNING = "learning"
    PRACTICE = "practice"
    MASTERY = "mastery"


class NextAction(str, Enum):
    ASSESS = "assess"
    EXPLAIN = "explain"
    QUESTION = "question"
    EVALUATE = "evaluate"
    HINT = "hint"
    ADVANCE = "advance"
    END = "end"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class ConversationTurn:
    role: Role
    content: str
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationTurn":
        return cls(
            role=Role(data["role"]),
            content=data.get("content") or "",
            timestamp=data.get("timestamp") or utc_now(),
        )


@dataclass
class PerformanceEntry:
    concept: str
    correct: bool
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {"concept": self.concept, "correct": self.correct, "timestamp": self.timestamp}


@dataclass
class TutorSessionState:
    """Everything the tutor knows about one session. Mutated only by the tutor graph."""
    session_id: str
    user_id: str
    topic: str
    student_level: StudentLevel = StudentLevel.BEGINNER
    current_concept: Optional[str] = None
    phase: Phase = Phase.INTRODUCTION
    next_action: NextAction = NextAction.ASSESS
    questions_asked: int = 0
    correct_answers: int = 0
    hints_given: int = 0
    history: List[ConversationTurn] = field(default_factory=list)
    performance: List[PerformanceEntry] = field(default_factory=list)
    concepts_mastered: List[str] = field(default_factory=list)
    struggling_with: List[str] = field(default_factory=list)
    learning_goals: List[str] = field(default_factory=list)
    last_evaluation: Optional[Dict[str, Any]] = None
    # Bumped on every history change; keys the context cache
    revision: int = 0
    created_at: str = field(default_factory=utc_now)
    last_interaction: str = field(default_factory=utc_now)

    def add_turn(self, role: Role, content: str) -> ConversationTurn:
        """Append a turn, keeping only the most recent MAX_HISTORY_TURNS."""
        turn = ConversationTurn(role=role, content=content)
        self.history.append(turn)
        if len(self.history) > MAX_HISTORY_TURNS:
            self.history = self.history[-MAX_HISTORY_TURNS:]
        self.revision += 1
        self.last_interaction = turn.timestamp
        return turn

    def last_turn(self, role: Role) -> Optional[ConversationTurn]:
        for turn in reversed(self.history):
            if turn.role == role:
                return turn
        return None

    def record_answer(self, correct: bool) -> None:
        self.performance.append(PerformanceEntry(concept=self.current_concept or self.topic, correct=correct))
        self.questions_asked += 1
        if correct:
            self.correct_answers += 1

    def reset_counters(self) -> None:
        self.questions_asked = 0
        self.correct_answers = 0
        self.hints_given = 0

    @property
    def mastery(self) -> int:
        """Accuracy on the current concept, as a whole percentage."""
        if self.questions_asked == 0:
            return 0
        return round(self.correct_answers / self.questions_asked * 100)

    @property
    def is_struggling(self) -> bool:
        if len(self.performance) < STRUGGLE_WINDOW:
            return False
        recent = self.performance[-STRUGGLE_WINDOW:]
        return sum(1 for p in recent if p.correct) < 1

    @property
    def should_advance(self) -> bool:
        return self.mastery >= MASTERY_THRESHOLD and self.questions_asked >= MASTERY_MIN_QUESTIONS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "topic": self.topic,
            "student_level": self.student_level.value,
            "current_concept": self.current_concept,
            "phase": self.phase.value,
            "next_action": self.next_action.value,
            "questions_asked": self.questions_asked,
            "correct_answers": self.correct_answers,
            "hints_given": self.hints_given,
            "history": [t.to_dict() for t in self.history],
            "performance": [p.to_dict() for p in self.performance],
            "concepts_mastered": list(self.concepts_mastered),
            "struggling_with": list(self.struggling_with),
            "learning_goals": list(self.learning_goals),
            "last_evaluation": self.last_evaluation,
            "revision": self.revision,
            "created_at": self.created_at,
            "last_interaction": self.last_interaction,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TutorSessionState":
        try:
            state = cls(
                session_id=data["session_id"],
                user_id=data["user_id"],
                topic=data["topic"],
                student_level=StudentLevel(data.get("student_level", "beginner")),
                current_concept=data.get("current_concept"),
                phase=Phase(data.get("phase", "introduction")),
                next_action=NextAction(data.get("next_action", "assess")),
                questions_asked=int(data.get("questions_asked", 0)),
                correct_answers=int(data.get("correct_answers", 0)),
                hints_given=int(data.get("hints_given", 0)),
                history=[ConversationTurn.from_dict(t) for t in data.get("history") or []],
                performance=[
                    PerformanceEntry(concept=p["concept"], correct=bool(p["correct"]), timestamp=p.get("timestamp") or utc_now())
                    for p in data.get("performance") or []
                ],
                concepts_mastered=list(data.get("concepts_mastered") or []),
                struggling_with=list(data.get("struggling_with") or []),
                learning_goals=list(data.get("learning_goals") or []),
                last_evaluation=data.get("last_evaluation"),
                revision=int(data.get("revision", 0)),
                created_at=data.get("created_at") or utc_now(),
                last_interaction=data.get("last_interaction") or utc_now(),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ValidationError(f"Invalid session snapshot: {e}") from e

        if state.correct_answers > state.questions_asked:
            raise ValidationError("Invalid session snapshot: correct_answers exceeds questions_asked")
        return state
