"""
Adaptive Tutor Session State Machine

LangGraph workflow running a Socratic loop:

    initialize -> assess -> explain -> question -> evaluate
    evaluate -> hint | advance | question | explain | summarize
    hint -> question, advance -> explain

Grading never ends a session on its own; a session ends through end_session.
A run starts at the node named by the session's next_action and stops as soon
as the tutor is waiting on the student (after explain, hint and question).
The checkpoint is written only after a run succeeds, so a failing node leaves
the last good checkpoint in place.
"""

import asyncio
import copy
import logging
import operator
import uuid
from contextlib import asynccontextmanager
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, TypedDict

from langgraph.graph import END, START, StateGraph

from adaptive_tutor_core.context_manager import ContextManager
from adaptive_tutor_core.difficulty_adapter import DifficultyAdapter
from adaptive_tutor_core.errors import (
    MalformedResponse,
    SessionNotFoundError,
    TutorCoreError,
    ValidationError,
)
from adaptive_tutor_core.llm_client import CompletionClient
from adaptive_tutor_core.parsing import Malformed, Parsed, parse_structured_block
from adaptive_tutor_core.state_persistence import LongTermStore, StatePersistence
from adaptive_tutor_core.tutor_prompts import (
    ADVANCE_MESSAGE,
    ASSESS_MESSAGE,
    EVALUATE_PROMPT,
    EXPLAIN_PROMPT,
    HINT_PROMPT,
    LEVEL_GUIDANCE,
    QUESTION_PROMPT,
    SUMMARY_PROMPT,
)
from adaptive_tutor_core.tutor_state import (
    NextAction,
    Phase,
    Role,
    StudentLevel,
    TutorSessionState,
)
from adaptive_tutor_core.vector_store import VectorStore

logger = logging.getLogger(__name__)

HINT_BUDGET = 2
UNDERSTANDING_LEVELS = ("poor", "partial", "good", "excellent")


class Transition(str, Enum):
    """Outcome of grading an answer."""
    HINT = "hint"
    ADVANCE = "advance"
    QUESTION = "question"
    EXPLAIN = "explain"
    END = "end"


class GraphState(TypedDict):
    session: TutorSessionState
    emitted: Annotated[List[str], operator.add]
    transition: Optional[Transition]


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


class AdaptiveTutorGraph:
    """
    Stateful tutoring sessions on top of a LangGraph workflow.

    Example:
        tutor = AdaptiveTutorGraph(llm, persistence, vector_store, context_manager)
        started = await tutor.start("user-1", "Python", "beginner")
        reply = await tutor.interact(started["session_id"], "ready")
    """

    TRANSITION_TARGETS = {
        Transition.HINT: "hint",
        Transition.ADVANCE: "advance",
        Transition.QUESTION: "question",
        Transition.EXPLAIN: "explain",
        Transition.END: "summarize",
    }

    ENTRY_NODES = {
        NextAction.ASSESS: "assess",
        NextAction.EXPLAIN: "explain",
        NextAction.QUESTION: "question",
        NextAction.EVALUATE: "evaluate",
        NextAction.HINT: "hint",
        NextAction.ADVANCE: "advance",
    }

    def __init__(
        self,
        completion_client: CompletionClient,
        persistence: StatePersistence,
        vector_store: Optional[VectorStore] = None,
        context_manager: Optional[ContextManager] = None,
        long_term_store: Optional[LongTermStore] = None,
        knowledge_collection: str = "knowledge",
        extend_ttl_seconds: int = 3600,
        difficulty_adapter: Optional[DifficultyAdapter] = None,
    ):
        self.llm = completion_client
        self.persistence = persistence
        self.vector_store = vector_store
        self.context_manager = context_manager
        self.long_term_store = long_term_store
        self.knowledge_collection = knowledge_collection
        self.extend_ttl_seconds = extend_ttl_seconds
        self.difficulty_adapter = difficulty_adapter or DifficultyAdapter()

        # Serializes interactions on the same session within this process
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self.workflow = self._create_workflow()

    # ========================================================================
    # Graph construction
    # ========================================================================

    def _create_workflow(self):
        missing = set(Transition) - set(self.TRANSITION_TARGETS)
        if missing:
            raise ValueError(f"Unhandled evaluation transitions: {sorted(t.value for t in missing)}")

        workflow = StateGraph(GraphState)

        workflow.add_node("initialize", self.initialize_node)
        workflow.add_node("assess", self.assess_node)
        workflow.add_node("explain", self.explain_node)
        workflow.add_node("question", self.question_node)
        workflow.add_node("evaluate", self.evaluate_node)
        workflow.add_node("hint", self.hint_node)
        workflow.add_node("advance", self.advance_node)
        workflow.add_node("summarize", self.summarize_node)

        workflow.add_conditional_edges(
            START,
            self.route_entry,
            {node: node for node in ["initialize", *self.ENTRY_NODES.values()]},
        )

        workflow.add_edge("initialize", "assess")
        workflow.add_edge("assess", "explain")
        workflow.add_edge("advance", "explain")

        # Nodes that wait on the student
        workflow.add_edge("explain", END)
        workflow.add_edge("question", END)
        workflow.add_edge("hint", END)

        workflow.add_conditional_edges(
            "evaluate",
            self.route_after_evaluation,
            dict(self.TRANSITION_TARGETS),
        )
        workflow.add_edge("summarize", END)

        return workflow.compile()

    def route_entry(self, state: GraphState) -> str:
        session = state["session"]
        if session.revision == 0 and not session.history:
            return "initialize"
        return self.ENTRY_NODES[session.next_action]

    def route_after_evaluation(self, state: GraphState) -> Transition:
        return state["transition"]

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _context_block(self, session: TutorSessionState) -> str:
        if self.context_manager is None or not session.history:
            return ""
        context = await self.context_manager.build_context(
            session.session_id,
            session.history,
            revision=session.revision,
        )
        return f"Conversation so far:\n{context.formatted}" if context.formatted else ""

    def _last_question_and_answer(self, session: TutorSessionState):
        """Most recent student answer and the tutor message it replies to."""
        answer_idx = None
        for idx in range(len(session.history) - 1, -1, -1):
            if session.history[idx].role == Role.USER:
                answer_idx = idx
                break
        if answer_idx is None:
            return None, None
        for idx in range(answer_idx - 1, -1, -1):
            if session.history[idx].role == Role.ASSISTANT:
                return session.history[idx].content, session.history[answer_idx].content
        return None, session.history[answer_idx].content

    def _emit(self, session: TutorSessionState, text: str) -> Dict[str, Any]:
        session.add_turn(Role.ASSISTANT, text)
        return {"session": session, "emitted": [text]}

    # ========================================================================
    # Nodes
    # ========================================================================

    async def initialize_node(self, state: GraphState) -> Dict[str, Any]:
        session = state["session"]
        logger.info(f"🎓 [AdaptiveTutor] Initializing session {session.session_id} on '{session.topic}'")

        if self.vector_store is not None and self.vector_store.initialized:
            try:
                materials = await self.vector_store.search(self.knowledge_collection, session.topic, top_k=3)
                session.learning_goals = [
                    str(m.metadata.get("title") or m.text[:100]) for m in materials
                ]
            except TutorCoreError as e:
                logger.warning(f"⚠️ [AdaptiveTutor] Could not load learning materials: {e}")

        session.add_turn(Role.SYSTEM, f"Starting adaptive tutoring session on {session.topic}")
        session.phase = Phase.INTRODUCTION
        session.next_action = NextAction.ASSESS
        return {"session": session}

    async def assess_node(self, state: GraphState) -> Dict[str, Any]:
        session = state["session"]
        session.phase = Phase.LEARNING
        session.next_action = NextAction.EXPLAIN
        return self._emit(session, ASSESS_MESSAGE.format(topic=session.topic, level=session.student_level.value))

    async def explain_node(self, state: GraphState) -> Dict[str, Any]:
        session = state["session"]
        if not session.current_concept:
            session.current_concept = f"Fundamentals of {session.topic}"

        goals = ""
        if session.learning_goals:
            goals = "Learning goals:\n" + "\n".join(f"- {g}" for g in session.learning_goals) + "\n"

        prompt = EXPLAIN_PROMPT.format(
            topic=session.topic,
            level=session.student_level.value,
            level_guidance=LEVEL_GUIDANCE[session.student_level.value],
            learning_goals=goals,
            context=await self._context_block(session),
            concept=session.current_concept,
        )
        try:
            explanation = await self.llm.complete(prompt)
        except TutorCoreError as e:
            logger.error(f"❌ [AdaptiveTutor] Explain failed for {session.session_id}: {e}")
            raise

        session.next_action = NextAction.QUESTION
        return self._emit(session, explanation.strip())

    async def question_node(self, state: GraphState) -> Dict[str, Any]:
        session = state["session"]
        struggling = ""
        if session.struggling_with:
            struggling = f"The student has struggled with: {', '.join(session.struggling_with)}"

        prompt = QUESTION_PROMPT.format(
            topic=session.topic,
            level=session.student_level.value,
            concept=session.current_concept or session.topic,
            struggling=struggling,
            context=await self._context_block(session),
        )
        try:
            question = await self.llm.complete(prompt, temperature=0.7, max_tokens=300)
        except TutorCoreError as e:
            logger.error(f"❌ [AdaptiveTutor] Question failed for {session.session_id}: {e}")
            raise

        session.phase = Phase.PRACTICE
        session.next_action = NextAction.EVALUATE
        return self._emit(session, question.strip())

    async def evaluate_node(self, state: GraphState) -> Dict[str, Any]:
        session = state["session"]
        question, answer = self._last_question_and_answer(session)

        prompt = EVALUATE_PROMPT.format(
            topic=session.topic,
            level=session.student_level.value,
            concept=session.current_concept or session.topic,
            question=question or "(no question recorded)",
            answer=answer or "(no answer)",
        )
        try:
            raw = await self.llm.complete(prompt, temperature=0.2, max_tokens=300, json_mode=True)
        except MalformedResponse as e:
            return self._ungradable(session, str(e))
        except TutorCoreError as e:
            logger.error(f"❌ [AdaptiveTutor] Evaluate failed for {session.session_id}: {e}")
            raise

        parsed = parse_structured_block(raw)
        if isinstance(parsed, Malformed):
            return self._ungradable(session, parsed.reason)
        if "correct" not in parsed.fields:
            return self._ungradable(session, "missing 'correct'")

        transition = self._grade(session, parsed)
        emitted: List[str] = []
        feedback = str(parsed.get("feedback") or "").strip()
        if feedback:
            session.add_turn(Role.ASSISTANT, feedback)
            emitted.append(feedback)
        return {"session": session, "emitted": emitted, "transition": transition}

    @staticmethod
    def _ungradable(session: TutorSessionState, reason: str) -> Dict[str, Any]:
        logger.warning(f"⚠️ [AdaptiveTutor] Ungradable evaluation ({reason}), asking again")
        session.last_evaluation = {"malformed": True, "reason": reason}
        return {"session": session, "transition": Transition.QUESTION}

    def _grade(self, session: TutorSessionState, parsed: Parsed) -> Transition:
        correct = _as_bool(parsed.get("correct"))
        suggest_hint = _as_bool(parsed.get("suggestHint", parsed.get("suggest_hint", False)))
        understanding = str(parsed.get("understanding", "partial")).lower()
        if understanding not in UNDERSTANDING_LEVELS:
            understanding = "partial"

        session.record_answer(correct)
        session.last_evaluation = {
            "correct": correct,
            "understanding": understanding,
            "suggest_hint": suggest_hint,
            "feedback": parsed.get("feedback"),
        }

        if session.is_struggling:
            concept = session.current_concept or session.topic
            if concept not in session.struggling_with:
                session.struggling_with.append(concept)
            adjustment = self.difficulty_adapter.check_adjustment(session)
            self.difficulty_adapter.apply_adjustment(session, adjustment)

        if correct:
            if session.should_advance:
                session.next_action = NextAction.ADVANCE
                return Transition.ADVANCE
            session.next_action = NextAction.QUESTION
            return Transition.QUESTION

        if suggest_hint or session.hints_given < HINT_BUDGET:
            session.next_action = NextAction.HINT
            return Transition.HINT
        session.next_action = NextAction.EXPLAIN
        return Transition.EXPLAIN

    async def hint_node(self, state: GraphState) -> Dict[str, Any]:
        session = state["session"]
        question, answer = self._last_question_and_answer(session)
        prompt = HINT_PROMPT.format(
            concept=session.current_concept or session.topic,
            level=session.student_level.value,
            question=question or "",
            answer=answer or "",
            context=await self._context_block(session),
        )
        try:
            hint = await self.llm.complete(prompt, temperature=0.5, max_tokens=200)
        except TutorCoreError as e:
            logger.error(f"❌ [AdaptiveTutor] Hint failed for {session.session_id}: {e}")
            raise

        session.hints_given += 1
        session.next_action = NextAction.QUESTION
        return self._emit(session, hint.strip())

    async def advance_node(self, state: GraphState) -> Dict[str, Any]:
        session = state["session"]
        if session.current_concept and session.current_concept not in session.concepts_mastered:
            session.concepts_mastered.append(session.current_concept)
        session.struggling_with = [c for c in session.struggling_with if c != session.current_concept]

        session.current_concept = f"Advanced {session.topic} - Level {len(session.concepts_mastered) + 1}"
        session.reset_counters()
        session.phase = Phase.LEARNING
        session.next_action = NextAction.EXPLAIN
        logger.info(f"🚀 [AdaptiveTutor] {session.session_id} advanced to '{session.current_concept}'")
        return self._emit(session, ADVANCE_MESSAGE.format(concept=session.current_concept))

    async def summarize_node(self, state: GraphState) -> Dict[str, Any]:
        session = state["session"]
        prompt = SUMMARY_PROMPT.format(
            topic=session.topic,
            concepts=", ".join(session.concepts_mastered) or "none yet",
            mastery=session.mastery,
            questions_asked=session.questions_asked,
            correct_answers=session.correct_answers,
        )
        try:
            summary = await self.llm.complete(prompt, temperature=0.5, max_tokens=400)
        except TutorCoreError as e:
            logger.error(f"❌ [AdaptiveTutor] Summarize failed for {session.session_id}: {e}")
            raise

        if session.concepts_mastered:
            session.phase = Phase.MASTERY
        session.next_action = NextAction.END
        return self._emit(session, summary.strip())

    # ========================================================================
    # Session lifecycle
    # ========================================================================

    @asynccontextmanager
    async def _serialized(self, session_id: str):
        """Hold the session's lock; the lock is dropped once nobody waits on it."""
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if self._lock_users[session_id] == 0:
                del self._lock_users[session_id]
                del self._session_locks[session_id]

    async def _run(self, session: TutorSessionState) -> Dict[str, Any]:
        """Run the graph on a private copy of the session."""
        working = copy.deepcopy(session)
        return await self.workflow.ainvoke({"session": working, "emitted": [], "transition": None})

    async def _save(self, session: TutorSessionState) -> None:
        await self.persistence.save(
            session.session_id,
            session.to_dict(),
            {"user_id": session.user_id, "topic": session.topic, "type": "adaptive-tutor"},
        )

    @staticmethod
    def _response(session: TutorSessionState, emitted: List[str]) -> Dict[str, Any]:
        return {
            "session_id": session.session_id,
            "message": emitted[-1] if emitted else None,
            "messages": emitted,
            "next_action": session.next_action.value,
            "phase": session.phase.value,
            "student_level": session.student_level.value,
            "current_concept": session.current_concept,
            "mastery": session.mastery,
            "state": session.to_dict(),
        }

    async def start(self, user_id: str, topic: str, level: str = "beginner") -> Dict[str, Any]:
        """
        Start a session and run it up to the first explanation.

        Returns:
            Response dict with session_id, the tutor messages and next_action
        """
        if not user_id or not str(user_id).strip():
            raise ValidationError("user_id is required")
        if ":" in str(user_id):
            raise ValidationError("user_id must not contain ':'")
        if not topic or not topic.strip():
            raise ValidationError("topic is required")
        try:
            student_level = StudentLevel(level)
        except ValueError:
            raise ValidationError(f"Unknown level '{level}'")

        session = TutorSessionState(
            session_id=f"tutor:{user_id}:{uuid.uuid4().hex[:12]}",
            user_id=str(user_id),
            topic=topic.strip(),
            student_level=student_level,
        )

        result = await self._run(session)
        session = result["session"]
        await self._save(session)
        logger.info(f"✅ [AdaptiveTutor] Started session {session.session_id}")
        return self._response(session, result["emitted"])

    async def interact(self, session_id: str, message: str) -> Dict[str, Any]:
        """
        Add a student message and advance the session.

        Raises:
            SessionNotFoundError: unknown or expired session
            ValidationError: empty message or session already ended
        """
        if not message or not message.strip():
            raise ValidationError("message is required")

        async with self._serialized(session_id):
            snapshot = await self.persistence.load(session_id)
            if snapshot is None:
                raise SessionNotFoundError(session_id)

            session = TutorSessionState.from_dict(snapshot)
            if session.next_action == NextAction.END:
                raise ValidationError(f"Session {session_id} has ended")

            session.add_turn(Role.USER, message.strip())
            result = await self._run(session)
            session = result["session"]

            await self._save(session)
            await self.persistence.extend_ttl(session_id, self.extend_ttl_seconds)

        logger.info(
            f"💬 [AdaptiveTutor] {session_id}: next={session.next_action.value}, mastery={session.mastery}%"
        )
        return self._response(session, result["emitted"])

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        snapshot = await self.persistence.load(session_id)
        if snapshot is None:
            return None
        session = TutorSessionState.from_dict(snapshot)
        return {
            "session_id": session_id,
            "state": session.to_dict(),
            "mastery": session.mastery,
            "is_struggling": session.is_struggling,
            "should_advance": session.should_advance,
        }

    async def end_session(self, session_id: str) -> Dict[str, Any]:
        """
        Summarize, optionally archive, and delete a session.

        Raises:
            SessionNotFoundError: unknown or expired session
        """
        async with self._serialized(session_id):
            snapshot = await self.persistence.load(session_id)
            if snapshot is None:
                raise SessionNotFoundError(session_id)
            session = TutorSessionState.from_dict(snapshot)

            if session.next_action == NextAction.END:
                last = session.last_turn(Role.ASSISTANT)
                summary = last.content if last else ""
            else:
                working = copy.deepcopy(session)
                result = await self.summarize_node({"session": working, "emitted": [], "transition": None})
                session = result["session"]
                summary = result["emitted"][-1]

            if self.long_term_store is not None:
                await self._save(session)
                await self.persistence.archive(session_id, self.long_term_store)
            else:
                await self.persistence.delete(session_id)

            if self.context_manager is not None:
                await self.context_manager.invalidate(session_id)

        logger.info(f"🏁 [AdaptiveTutor] Ended session {session_id}")
        return {
            "session_id": session_id,
            "summary": summary,
            "stats": {
                "concepts_mastered": session.concepts_mastered,
                "mastery": session.mastery,
                "questions_asked": session.questions_asked,
                "correct_answers": session.correct_answers,
                "hints_given": session.hints_given,
                "student_level": session.student_level.value,
            },
        }

    async def list_user_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        sessions = []
        for session_id in await self.persistence.list_checkpoints(f"tutor:{user_id}:"):
            snapshot = await self.persistence.load(session_id)
            if snapshot is None or snapshot.get("user_id") != user_id:
                continue
            sessions.append({
                "session_id": session_id,
                "topic": snapshot.get("topic"),
                "next_action": snapshot.get("next_action"),
                "student_level": snapshot.get("student_level"),
                "last_interaction": snapshot.get("last_interaction"),
            })
        return sessions
