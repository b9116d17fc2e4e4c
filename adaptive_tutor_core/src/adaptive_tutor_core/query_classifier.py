"""
Query Router / Classifier

Decides how an incoming query is handled:
- retrieval: answer from the knowledge base
- conversational: plain chat
- session-memory: refers back to earlier turns
- platform-action: asks the platform to do something (enroll, flashcards, ...)

Stage A is a fast regex scorer. When it is not confident (or semantic routing
is requested) Stage B compares the query embedding against intent exemplars.
Retrieval is only returned from Stage B once the knowledge collection
actually holds relevant content.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from adaptive_tutor_core.embedding_service import EmbeddingService, cosine_similarity
from adaptive_tutor_core.errors import TutorCoreError, ValidationError
from adaptive_tutor_core.llm_client import CompletionClient
from adaptive_tutor_core.parsing import Malformed, parse_structured_block
from adaptive_tutor_core.vector_store import VectorStore

logger = logging.getLogger(__name__)


class QueryMode(str, Enum):
    RETRIEVAL = "retrieval"
    CONVERSATIONAL = "conversational"
    SESSION_MEMORY = "session-memory"
    PLATFORM_ACTION = "platform-action"


class ClassificationMethod(str, Enum):
    RULE = "rule"
    SEMANTIC = "semantic"
    FORCED = "forced"
    LLM = "llm"


@dataclass
class ClassificationResult:
    mode: QueryMode
    confidence: float
    method: ClassificationMethod
    rationale: str
    fallback: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "mode": self.mode.value,
            "confidence": round(self.confidence, 4),
            "method": self.method.value,
            "rationale": self.rationale,
            "fallback": self.fallback,
        }
        if self.details:
            data["details"] = self.details
        return data


# ============================================================================
# Stage A patterns
# ============================================================================

CONVERSATIONAL_PATTERNS = [
    # Greetings / thanks / farewells
    re.compile(r"^(hi|hello|hey|good morning|good afternoon|good evening|greetings)\b", re.I),
    re.compile(r"^(thanks|thank you|thx|ty|appreciate|grateful)\b", re.I),
    re.compile(r"^(bye|goodbye|see you|farewell|cya)\b", re.I),
    # Short acknowledgments and follow-ups
    re.compile(r"^(yes|no|okay|ok|sure|yeah|yep|nope|maybe)\b", re.I),
    re.compile(r"^(i see|got it|i understand|makes sense|that helps)\b", re.I),
    re.compile(r"^(continue|go on|tell me more|what else|next)\b", re.I),
    # Opinion / emotion cues
    re.compile(r"\b(feel|feeling|think|believe|opinion|advice|suggest|recommend)\b", re.I),
    re.compile(r"\b(motivation|inspire|encourage|help|support)\b", re.I),
    re.compile(r"\b(tired|frustrated|confused|stuck|difficult|hard)\b", re.I),
]

QUESTION_PATTERNS = [
    re.compile(r"^(what|how|why|when|where|who|which|explain|define|describe)\s+", re.I),
    re.compile(r"\b(what is|how to|how do|how does|why is|explain|tell me about|define)\b", re.I),
    re.compile(r"\b(tutorial|guide|example|steps|learn|teach|show me)\b", re.I),
]

KNOWLEDGE_PATTERNS = [
    re.compile(r"\b(course|lesson|module|chapter|topic|subject|curriculum)\b", re.I),
    re.compile(r"\b(python|javascript|java|c\+\+|programming|coding|algorithm|data structure)\b", re.I),
    re.compile(r"\b(machine learning|ai|deep learning|neural network)\b", re.I),
    re.compile(r"\b(database|sql|mongodb|api|rest|http)\b", re.I),
    re.compile(r"\b(react|vue|angular|node|express|django|flask)\b", re.I),
    re.compile(r"\b(calculus|algebra|statistics|mathematics|physics|chemistry)\b", re.I),
]

LEARNING_PATTERNS = [
    re.compile(r"\b(learn|study|practice|exercise|quiz|test|review|understand)\b", re.I),
    re.compile(r"\b(roadmap|path|progress|skill|concept|prerequisite)\b", re.I),
]

QUESTION_WEIGHT = 0.4
KNOWLEDGE_WEIGHT = 0.3
LEARNING_WEIGHT = 0.3

# ============================================================================
# Stage B exemplars and session-memory cues
# ============================================================================

INTENT_EXEMPLARS: Dict[QueryMode, List[str]] = {
    QueryMode.RETRIEVAL: [
        "Explain the concept thoroughly with details",
        "What is the definition and meaning",
        "Teach me about this topic step by step",
        "I need to understand how something works",
        "Give me detailed information about this subject",
        "Help me learn this concept with examples",
    ],
    QueryMode.CONVERSATIONAL: [
        "Hello, how are you doing today",
        "I appreciate your help, thank you",
        "That was helpful, I understand now",
        "Can we have a casual conversation",
        "What do you think about this",
        "Tell me something interesting",
    ],
    QueryMode.SESSION_MEMORY: [
        "What did you just tell me",
        "Repeat the previous explanation",
        "Go back to what you said before",
        "Continue from where you left off",
        "Tell me more about the last topic",
        "Expand on your previous answer",
    ],
    QueryMode.PLATFORM_ACTION: [
        "Enroll me in this course",
        "Show my progress in the lessons",
        "Generate flashcards from this",
        "Create a learning roadmap for me",
        "Open the next lesson please",
        "Track my study analytics",
    ],
}

REFERENCE_PATTERNS = [
    re.compile(r"\b(that|this|it|above|before|previous|earlier|last|again)\b", re.I),
    re.compile(r"\b(continue|more|expand|elaborate)\b", re.I),
    re.compile(r"\b(what (did )?you (just )?(say|said|tell|told|mention|explain))\b", re.I),
]

SHORT_QUERY_TOKENS = 5
PLATFORM_THRESHOLD = 0.6
RETRIEVAL_THRESHOLD = 0.5
AMBIGUITY_DELTA = 0.15
AMBIGUITY_CEILING = 0.7

LLM_CLASSIFIER_PROMPT = """You are a query classifier for an AI tutoring platform.
Decide how the user's query should be handled:
- "retrieval": needs factual knowledge, course content or stored material
- "conversational": greetings, opinions, casual chat, encouragement
- "session-memory": refers to something said earlier in this conversation
- "platform-action": asks the platform to do something (enroll, show progress, flashcards, roadmap)

Query: "{query}"

Respond with ONLY a JSON object:
{{"mode": "<one of the four modes>", "confidence": <0.0-1.0>, "reason": "<short explanation>"}}"""

_LLM_MODE_ALIASES = {
    "rag": QueryMode.RETRIEVAL,
    "simple": QueryMode.CONVERSATIONAL,
    "memory": QueryMode.SESSION_MEMORY,
    "action": QueryMode.PLATFORM_ACTION,
}


def _matches_any(patterns: List[re.Pattern], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def _history_length(conversation_history: Optional[List[Any]]) -> int:
    return len(conversation_history) if conversation_history else 0


class QueryClassifier:
    """
    Two-stage query router.

    Example:
        classifier = QueryClassifier(embedding_service, vector_store)
        result = await classifier.classify("What is recursion in programming?")
        result.mode  # QueryMode.RETRIEVAL
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: Optional[VectorStore] = None,
        completion_client: Optional[CompletionClient] = None,
        knowledge_collection: str = "knowledge",
        min_knowledge_score: float = 0.3,
        knowledge_top_k: int = 3,
        semantic_threshold: float = 0.7,
    ):
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.completion_client = completion_client
        self.knowledge_collection = knowledge_collection
        self.min_knowledge_score = min_knowledge_score
        self.knowledge_top_k = knowledge_top_k
        self.semantic_threshold = semantic_threshold

        self._exemplar_vectors: Optional[Dict[QueryMode, List[List[float]]]] = None
        self._exemplar_lock = asyncio.Lock()
        self.reset_stats()

    # ------------------------------------------------------------------
    # Stage A
    # ------------------------------------------------------------------

    def classify_with_rules(self, query: str) -> ClassificationResult:
        """
        Regex scorer.

        Conversational cues short-circuit at 0.85. Otherwise each matching
        group (question form, domain keyword, learning intent) adds its weight
        once; the total decides the mode and confidence.
        """
        text = query.strip()

        if _matches_any(CONVERSATIONAL_PATTERNS, text):
            return ClassificationResult(
                mode=QueryMode.CONVERSATIONAL,
                confidence=0.85,
                method=ClassificationMethod.RULE,
                rationale="Matched conversational pattern",
            )

        score = 0.0
        matched = []
        if _matches_any(QUESTION_PATTERNS, text):
            score += QUESTION_WEIGHT
            matched.append("question")
        if _matches_any(KNOWLEDGE_PATTERNS, text):
            score += KNOWLEDGE_WEIGHT
            matched.append("knowledge")
        if _matches_any(LEARNING_PATTERNS, text):
            score += LEARNING_WEIGHT
            matched.append("learning")
        score = round(score, 2)
        details = {"score": score, "matched": matched}

        if score >= 0.6:
            return ClassificationResult(
                mode=QueryMode.RETRIEVAL,
                confidence=min(score, 0.95),
                method=ClassificationMethod.RULE,
                rationale=f"Knowledge query ({', '.join(matched)})",
                details=details,
            )
        if score >= 0.3:
            return ClassificationResult(
                mode=QueryMode.RETRIEVAL,
                confidence=0.6,
                method=ClassificationMethod.RULE,
                rationale="Ambiguous query leaning towards retrieval",
                details=details,
            )
        if len(text) < 20:
            return ClassificationResult(
                mode=QueryMode.CONVERSATIONAL,
                confidence=0.7,
                method=ClassificationMethod.RULE,
                rationale="Short query with no knowledge cues",
                details=details,
            )
        return ClassificationResult(
            mode=QueryMode.RETRIEVAL,
            confidence=0.5,
            method=ClassificationMethod.RULE,
            rationale="No decisive pattern, defaulting to retrieval",
            details=details,
        )

    # ------------------------------------------------------------------
    # Session-memory pre-check
    # ------------------------------------------------------------------

    def detect_session_memory(
        self,
        query: str,
        conversation_history: Optional[List[Any]] = None,
    ) -> Optional[ClassificationResult]:
        """Referential follow-ups ("what did you say?", "explain that again")."""
        if _history_length(conversation_history) == 0:
            return None
        if not _matches_any(REFERENCE_PATTERNS, query):
            return None

        is_short = len(query.split()) <= SHORT_QUERY_TOKENS
        confidence = 0.85 if is_short else 0.65
        return ClassificationResult(
            mode=QueryMode.SESSION_MEMORY,
            confidence=confidence,
            method=ClassificationMethod.RULE,
            rationale="Query references previous conversation context",
            details={"short_query": is_short},
        )

    # ------------------------------------------------------------------
    # Stage B
    # ------------------------------------------------------------------

    async def _get_exemplar_vectors(self) -> Dict[QueryMode, List[List[float]]]:
        if self._exemplar_vectors is not None:
            return self._exemplar_vectors
        async with self._exemplar_lock:
            if self._exemplar_vectors is None:
                texts = [t for mode in QueryMode for t in INTENT_EXEMPLARS[mode]]
                batch = await self.embedding_service.embed_batch(texts)
                vectors: Dict[QueryMode, List[List[float]]] = {}
                offset = 0
                for mode in QueryMode:
                    count = len(INTENT_EXEMPLARS[mode])
                    vectors[mode] = batch.vectors[offset:offset + count]
                    offset += count
                self._exemplar_vectors = vectors
                logger.info(f"✅ [Classifier] Embedded {len(texts)} intent exemplars")
        return self._exemplar_vectors

    async def intent_scores(self, query: str) -> Dict[QueryMode, float]:
        """Max exemplar similarity per intent."""
        exemplars = await self._get_exemplar_vectors()
        query_vector = (await self.embedding_service.embed(query)).vector
        return {
            mode: max(cosine_similarity(query_vector, v) for v in vectors)
            for mode, vectors in exemplars.items()
        }

    async def check_knowledge_base(self, query: str) -> Dict[str, Any]:
        """
        Confirm the knowledge collection holds something relevant to the query.

        Never raises: an unavailable index is reported as not available.
        """
        if self.vector_store is None or not self.vector_store.initialized:
            return {"available": False, "reason": "Vector index not initialized"}

        self.stats["knowledge_checks"] += 1
        try:
            results = await self.vector_store.search(
                self.knowledge_collection, query, top_k=self.knowledge_top_k
            )
        except TutorCoreError as e:
            logger.warning(f"⚠️ [Classifier] Knowledge base check failed: {e}")
            return {"available": False, "reason": "Check failed", "error": str(e)}

        if not results:
            return {"available": False, "reason": "Knowledge base empty"}

        best_score = results[0].score
        if best_score < self.min_knowledge_score:
            return {
                "available": False,
                "reason": "Low relevance",
                "best_score": best_score,
                "threshold": self.min_knowledge_score,
            }
        return {"available": True, "best_score": best_score, "document_count": len(results)}

    async def classify_semantic(
        self,
        query: str,
        conversation_history: Optional[List[Any]] = None,
        knowledge_check: bool = True,
    ) -> ClassificationResult:
        """Exemplar-similarity classification. Embedding failures propagate."""
        scores = await self.intent_scores(query)
        ranked: List[Tuple[QueryMode, float]] = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)
        primary, primary_score = ranked[0]
        secondary, secondary_score = ranked[1]
        delta = primary_score - secondary_score
        details: Dict[str, Any] = {
            "similarities": {m.value: round(s, 4) for m, s in scores.items()},
            "primary": primary.value,
            "secondary": secondary.value,
        }

        if primary == QueryMode.PLATFORM_ACTION and primary_score > PLATFORM_THRESHOLD:
            details["requires_action_resolution"] = True
            return ClassificationResult(
                mode=QueryMode.PLATFORM_ACTION,
                confidence=primary_score,
                method=ClassificationMethod.SEMANTIC,
                rationale="Query indicates platform action request",
                details=details,
            )

        if primary == QueryMode.RETRIEVAL and primary_score > RETRIEVAL_THRESHOLD:
            if not knowledge_check:
                return ClassificationResult(
                    mode=QueryMode.RETRIEVAL,
                    confidence=primary_score,
                    method=ClassificationMethod.SEMANTIC,
                    rationale="Knowledge retrieval intent detected",
                    details=details,
                )
            check = await self.check_knowledge_base(query)
            details["knowledge_check"] = check
            if check["available"]:
                return ClassificationResult(
                    mode=QueryMode.RETRIEVAL,
                    confidence=primary_score,
                    method=ClassificationMethod.SEMANTIC,
                    rationale="Knowledge retrieval intent detected with relevant documents",
                    details=details,
                )
            self.stats["fallbacks"] += 1
            logger.info(f"↩️ [Classifier] Retrieval intent but falling back: {check['reason']}")
            details["original_intent"] = QueryMode.RETRIEVAL.value
            return ClassificationResult(
                mode=QueryMode.CONVERSATIONAL,
                confidence=primary_score,
                method=ClassificationMethod.SEMANTIC,
                rationale=f"Retrieval intended but falling back: {check['reason']}",
                fallback=True,
                details=details,
            )

        if delta < AMBIGUITY_DELTA and primary_score < AMBIGUITY_CEILING:
            return ClassificationResult(
                mode=QueryMode.CONVERSATIONAL,
                confidence=0.4,
                method=ClassificationMethod.SEMANTIC,
                rationale="Intent ambiguous, defaulting to conversational",
                details=details,
            )

        if primary == QueryMode.SESSION_MEMORY and _history_length(conversation_history) > 0:
            return ClassificationResult(
                mode=QueryMode.SESSION_MEMORY,
                confidence=primary_score,
                method=ClassificationMethod.SEMANTIC,
                rationale="Query resembles a reference to earlier turns",
                details=details,
            )

        return ClassificationResult(
            mode=QueryMode.CONVERSATIONAL,
            confidence=primary_score,
            method=ClassificationMethod.SEMANTIC,
            rationale=f"Primary intent: {primary.value}, handled conversationally",
            details=details,
        )

    # ------------------------------------------------------------------
    # Optional LLM stage
    # ------------------------------------------------------------------

    async def classify_with_llm(
        self,
        query: str,
        fallback: Optional[ClassificationResult] = None,
    ) -> ClassificationResult:
        """Ask the completion model. Malformed answers and upstream errors fall back to rules."""
        fallback = fallback or self.classify_with_rules(query)
        if self.completion_client is None:
            return fallback

        try:
            text = await self.completion_client.complete(
                LLM_CLASSIFIER_PROMPT.format(query=query.replace('"', "'")),
                temperature=0.0,
                max_tokens=150,
                json_mode=True,
            )
        except TutorCoreError as e:
            logger.warning(f"⚠️ [Classifier] LLM classification failed, using rules: {e}")
            return fallback

        parsed = parse_structured_block(text)
        if isinstance(parsed, Malformed):
            logger.warning(f"⚠️ [Classifier] Unparseable LLM classification ({parsed.reason}), using rules")
            return fallback

        raw_mode = str(parsed.get("mode", "")).strip().lower()
        try:
            mode = _LLM_MODE_ALIASES.get(raw_mode) or QueryMode(raw_mode)
        except ValueError:
            logger.warning(f"⚠️ [Classifier] Unknown LLM mode '{raw_mode}', using rules")
            return fallback

        try:
            confidence = float(parsed.get("confidence", 0.8))
        except (TypeError, ValueError):
            confidence = 0.8
        return ClassificationResult(
            mode=mode,
            confidence=max(0.0, min(confidence, 1.0)),
            method=ClassificationMethod.LLM,
            rationale=str(parsed.get("reason") or "LLM classification"),
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def classify(
        self,
        query: str,
        conversation_history: Optional[List[Any]] = None,
        knowledge_check: bool = True,
        force_mode: Optional[str] = None,
        use_semantic: bool = False,
        use_llm: bool = False,
    ) -> ClassificationResult:
        """
        Route a query.

        Args:
            query: User text
            conversation_history: Prior turns (enables session-memory detection)
            knowledge_check: Confirm retrieval against the knowledge collection
            force_mode: Skip classification and return this mode at 1.0
            use_semantic: Run Stage B even when the rules are confident
            use_llm: Ask the completion model instead of Stage B

        Returns:
            ClassificationResult
        """
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must be a non-empty string")
        query = query.strip()
        start_time = time.perf_counter()

        if force_mode:
            try:
                mode = QueryMode(force_mode)
            except ValueError:
                raise ValidationError(f"Unknown mode '{force_mode}'")
            result = ClassificationResult(
                mode=mode,
                confidence=1.0,
                method=ClassificationMethod.FORCED,
                rationale=f"Mode forced to {mode.value}",
            )
            return self._record(result, start_time)

        rule_result = self.classify_with_rules(query)

        if use_llm:
            return self._record(await self.classify_with_llm(query, fallback=rule_result), start_time)

        if rule_result.confidence >= self.semantic_threshold and not use_semantic:
            return self._record(rule_result, start_time)

        memory_result = self.detect_session_memory(query, conversation_history)
        if memory_result is not None:
            return self._record(memory_result, start_time)

        try:
            result = await self.classify_semantic(query, conversation_history, knowledge_check)
        except Exception as e:
            self.stats["semantic_failures"] += 1
            logger.warning(f"⚠️ [Classifier] Semantic stage failed, using rule result: {e}")
            rule_result.details = {**rule_result.details, "degraded": True, "error": str(e)}
            return self._record(rule_result, start_time)

        return self._record(result, start_time)

    async def classify_batch(self, queries: List[str], **options) -> List[ClassificationResult]:
        return [await self.classify(q, **options) for q in queries]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _record(self, result: ClassificationResult, start_time: float) -> ClassificationResult:
        self.stats["total"] += 1
        self.stats["modes"][result.mode.value] += 1
        self.stats["methods"][result.method.value] += 1
        total = self.stats["total"]
        self.stats["average_confidence"] += (result.confidence - self.stats["average_confidence"]) / total
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        result.details.setdefault("elapsed_ms", round(elapsed_ms, 2))
        logger.debug(
            f"🧭 [Classifier] {result.mode.value} ({result.method.value}, "
            f"{result.confidence:.2f}) in {elapsed_ms:.1f}ms"
        )
        return result

    def reset_stats(self) -> None:
        self.stats: Dict[str, Any] = {
            "total": 0,
            "modes": {m.value: 0 for m in QueryMode},
            "methods": {m.value: 0 for m in ClassificationMethod},
            "average_confidence": 0.0,
            "fallbacks": 0,
            "knowledge_checks": 0,
            "semantic_failures": 0,
        }

    def get_stats(self) -> Dict[str, Any]:
        total = self.stats["total"]

        def pct(count: int) -> float:
            return round(count / total * 100, 2) if total else 0.0

        return {
            "total_classifications": total,
            "modes": {
                mode: {"count": count, "percentage": pct(count)}
                for mode, count in self.stats["modes"].items()
            },
            "methods": {
                method: {"count": count, "percentage": pct(count)}
                for method, count in self.stats["methods"].items()
            },
            "average_confidence": round(self.stats["average_confidence"], 4),
            "fallbacks": self.stats["fallbacks"],
            "fallback_rate": pct(self.stats["fallbacks"]),
            "knowledge_checks": self.stats["knowledge_checks"],
            "semantic_failures": self.stats["semantic_failures"],
        }
