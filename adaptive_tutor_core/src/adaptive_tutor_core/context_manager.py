"""
Conversation Context Manager

Compresses conversation history into a bounded context for prompts:
- the last K turns verbatim
- older turns summarized once there are enough of them, otherwise verbatim

Built contexts are cached per session and keyed on the session revision, so
any change to the history (not just to the recent tail) forces a rebuild.
"""

import hashlib
import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from adaptive_tutor_core.errors import TutorCoreError
from adaptive_tutor_core.kv_store import KeyValueStore
from adaptive_tutor_core.llm_client import CompletionClient
from adaptive_tutor_core.tutor_state import ConversationTurn

logger = logging.getLogger(__name__)

CONTEXT_KEY_PREFIX = "context:"
SUMMARY_MAX_WORDS = 200

SUMMARY_PROMPT = """Summarize the following tutoring conversation in at most {max_words} words.
Keep the topics covered, what the student understood or struggled with, and any open questions.

{transcript}

Summary:"""

NAME_PATTERN = re.compile(r"(?:[Ii]'m|[Ii] am|[Mm]y name is|[Cc]all me)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)")
ROLE_PATTERNS = [
    re.compile(r"(?:i'm|i am)\s+an?\s+([a-z\s]+?(?:developer|engineer|designer|student|teacher|manager))\b", re.I),
    re.compile(r"(?:work as|working as)\s+(?:an?\s+)?([a-z\s]+?)(?:[.,!?]|$)", re.I),
]
INTEREST_PATTERN = re.compile(r"(?:interested in|i like|i love|passionate about)\s+([a-z0-9\s,+#-]+?)(?:[.!?]|$)", re.I)

TurnLike = Union[ConversationTurn, Dict[str, Any]]


def estimate_tokens(text: str) -> int:
    """Rough token count: characters / 4."""
    return math.ceil(len(text) / 4) if text else 0


def _turn_dict(turn: TurnLike) -> Dict[str, str]:
    if isinstance(turn, ConversationTurn):
        return turn.to_dict()
    role = turn.get("role", "user")
    return {
        "role": getattr(role, "value", role),
        "content": turn.get("content") or "",
        "timestamp": turn.get("timestamp") or "",
    }


def _render_turn(turn: Dict[str, str]) -> str:
    return f"{turn['role'].capitalize()}: {turn['content']}"


def _fingerprint(turns: List[Dict[str, str]]) -> str:
    payload = json.dumps([(t["role"], t["content"]) for t in turns])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class ConversationContext:
    session_id: str
    summary: str = ""
    recent_verbatim: List[Dict[str, str]] = field(default_factory=list)
    older_verbatim: List[Dict[str, str]] = field(default_factory=list)
    profile: Dict[str, Any] = field(default_factory=dict)
    formatted: str = ""
    estimated_tokens: int = 0
    truncated: bool = False
    revision: Optional[str] = None
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "summary": self.summary,
            "recent_verbatim": self.recent_verbatim,
            "older_verbatim": self.older_verbatim,
            "profile": self.profile,
            "formatted": self.formatted,
            "estimated_tokens": self.estimated_tokens,
            "truncated": self.truncated,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationContext":
        return cls(
            session_id=data["session_id"],
            summary=data.get("summary", ""),
            recent_verbatim=data.get("recent_verbatim", []),
            older_verbatim=data.get("older_verbatim", []),
            profile=data.get("profile", {}),
            formatted=data.get("formatted", ""),
            estimated_tokens=data.get("estimated_tokens", 0),
            truncated=data.get("truncated", False),
            revision=data.get("revision"),
        )


class ContextManager:
    """
    Builds token-bounded conversation context.

    Example:
        manager = ContextManager(completion_client, store)
        ctx = await manager.build_context("tutor:u1:abc", history, revision=7)
        prompt = ctx.formatted + "\\n\\n" + question
    """

    def __init__(
        self,
        completion_client: CompletionClient,
        store: Optional[KeyValueStore] = None,
        recent_verbatim: int = 3,
        summary_threshold: int = 5,
        max_tokens: int = 2000,
        cache_ttl: int = 3600,
    ):
        self.completion_client = completion_client
        self.store = store
        self.recent_verbatim = recent_verbatim
        self.summary_threshold = summary_threshold
        self.max_tokens = max_tokens
        self.cache_ttl = cache_ttl
        self.stats = {"builds": 0, "cache_hits": 0, "summaries": 0, "summary_failures": 0}

    @staticmethod
    def _cache_key(session_id: str) -> str:
        return f"{CONTEXT_KEY_PREFIX}{session_id}"

    async def _read_cache(self, session_id: str) -> Optional[ConversationContext]:
        if self.store is None:
            return None
        try:
            raw = await self.store.get(self._cache_key(session_id))
            return ConversationContext.from_dict(json.loads(raw)) if raw else None
        except Exception as e:
            logger.warning(f"⚠️ [ContextManager] Cache read failed for {session_id}: {e}")
            return None

    async def _write_cache(self, context: ConversationContext) -> None:
        if self.store is None:
            return
        try:
            await self.store.set(
                self._cache_key(context.session_id),
                json.dumps(context.to_dict()),
                ttl=self.cache_ttl,
            )
        except Exception as e:
            logger.warning(f"⚠️ [ContextManager] Cache write failed for {context.session_id}: {e}")

    async def invalidate(self, session_id: str) -> None:
        if self.store is None:
            return
        try:
            await self.store.delete(self._cache_key(session_id))
        except Exception as e:
            logger.warning(f"⚠️ [ContextManager] Cache invalidation failed for {session_id}: {e}")

    async def summarize(self, turns: List[Dict[str, str]]) -> str:
        """
        Summarize older turns. Returns "" when the model call fails.
        """
        transcript = "\n".join(_render_turn(t) for t in turns)
        try:
            summary = await self.completion_client.complete(
                SUMMARY_PROMPT.format(max_words=SUMMARY_MAX_WORDS, transcript=transcript),
                temperature=0.3,
                max_tokens=400,
            )
        except TutorCoreError as e:
            self.stats["summary_failures"] += 1
            logger.warning(f"⚠️ [ContextManager] Summarization failed, keeping turns verbatim: {e}")
            return ""

        words = summary.strip().split()
        if len(words) > SUMMARY_MAX_WORDS:
            words = words[:SUMMARY_MAX_WORDS]
        self.stats["summaries"] += 1
        return " ".join(words)

    async def build_context(
        self,
        session_id: str,
        history: List[TurnLike],
        profile: Optional[Dict[str, Any]] = None,
        revision: Optional[int] = None,
    ) -> ConversationContext:
        """
        Build (or fetch from cache) the compressed context for a session.

        Args:
            session_id: Session the history belongs to
            history: Full ordered history, oldest first
            profile: Optional user profile (name, role, interests)
            revision: Session revision counter; when omitted a hash of the
                whole history is used as the cache key instead

        Returns:
            ConversationContext
        """
        turns = [_turn_dict(t) for t in history or []]
        cache_revision = str(revision) if revision is not None else _fingerprint(turns)
        profile = profile if profile is not None else self.extract_user_profile(turns)

        cached = await self._read_cache(session_id)
        if cached is not None and cached.revision == cache_revision and cached.profile == profile:
            self.stats["cache_hits"] += 1
            cached.cached = True
            return cached

        self.stats["builds"] += 1
        split = max(len(turns) - self.recent_verbatim, 0)
        older, recent = turns[:split], turns[split:]

        summary = ""
        older_verbatim = older
        if len(older) >= self.summary_threshold:
            summary = await self.summarize(older)
            if summary:
                older_verbatim = []

        formatted, truncated = self._fit_to_budget(profile, summary, older_verbatim + recent)
        context = ConversationContext(
            session_id=session_id,
            summary=summary,
            recent_verbatim=recent,
            older_verbatim=older_verbatim,
            profile=profile,
            formatted=formatted,
            estimated_tokens=estimate_tokens(formatted),
            truncated=truncated,
            revision=cache_revision,
        )
        await self._write_cache(context)
        return context

    def _fit_to_budget(
        self,
        profile: Dict[str, Any],
        summary: str,
        turns: List[Dict[str, str]],
    ):
        """Drop the oldest verbatim turns first, then hard-truncate."""
        kept = list(turns)
        truncated = False
        formatted = self.format_context(profile, summary, kept)
        while estimate_tokens(formatted) > self.max_tokens and len(kept) > 1:
            kept.pop(0)
            truncated = True
            formatted = self.format_context(profile, summary, kept)

        budget_chars = self.max_tokens * 4
        if len(formatted) > budget_chars:
            formatted = formatted[:budget_chars]
            truncated = True
        return formatted, truncated

    @staticmethod
    def format_context(
        profile: Optional[Dict[str, Any]],
        summary: str,
        turns: List[Dict[str, str]],
    ) -> str:
        sections = []

        if profile:
            parts = []
            if profile.get("name"):
                parts.append(f"Name: {profile['name']}")
            if profile.get("role"):
                parts.append(f"Role: {profile['role']}")
            if profile.get("interests"):
                parts.append(f"Interests: {', '.join(profile['interests'])}")
            if parts:
                sections.append("User profile:\n" + "\n".join(parts))

        if summary:
            sections.append(f"Summary of earlier conversation:\n{summary}")

        if turns:
            sections.append("Recent conversation:\n" + "\n".join(_render_turn(t) for t in turns))

        return "\n\n".join(sections)

    @staticmethod
    def extract_user_profile(history: List[TurnLike]) -> Dict[str, Any]:
        """Pull name, role and interests out of the user's own messages."""
        profile: Dict[str, Any] = {}
        interests: List[str] = []

        for turn in (_turn_dict(t) for t in history or []):
            if turn["role"] != "user":
                continue
            content = turn["content"]

            name_match = NAME_PATTERN.search(content)
            if name_match and "name" not in profile:
                profile["name"] = name_match.group(1).strip()

            if "role" not in profile:
                for pattern in ROLE_PATTERNS:
                    role_match = pattern.search(content)
                    if role_match:
                        profile["role"] = role_match.group(1).strip()
                        break

            for match in INTEREST_PATTERN.finditer(content):
                for item in re.split(r",|\band\b", match.group(1)):
                    item = item.strip()
                    if item and item not in interests:
                        interests.append(item)

        if interests:
            profile["interests"] = interests
        return profile

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "recent_verbatim": self.recent_verbatim,
            "summary_threshold": self.summary_threshold,
            "max_tokens": self.max_tokens,
        }
