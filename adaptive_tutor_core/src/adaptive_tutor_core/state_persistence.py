"""
State Persistence Layer

TTL-based checkpoint store keyed by session/workflow id. Snapshots are opaque:
this layer never looks inside them. Writes are whole-snapshot overwrites.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from adaptive_tutor_core.errors import NotFoundError, UpstreamUnavailable
from adaptive_tutor_core.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

CHECKPOINT_PREFIX = "checkpoint:"
CHECKPOINT_VERSION = "1.0"


@dataclass
class Checkpoint:
    id: str
    state: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)
    ttl: int = -1

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "state": self.state, "metadata": self.metadata, "ttl": self.ttl}


class LongTermStore:
    """Destination for finished sessions."""

    async def archive(self, workflow_id: str, snapshot: Dict[str, Any], metadata: Dict[str, Any]) -> None:
        raise NotImplementedError


class SupabaseSessionArchive(LongTermStore):
    """Archives final snapshots into a Supabase table."""

    def __init__(self, supabase_client, table: str = "tutor_session_archive"):
        self.supabase = supabase_client
        self.table = table

    async def archive(self, workflow_id: str, snapshot: Dict[str, Any], metadata: Dict[str, Any]) -> None:
        row = {
            "workflow_id": workflow_id,
            "user_id": snapshot.get("user_id"),
            "snapshot": snapshot,
            "metadata": metadata,
            "archived_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await asyncio.to_thread(
                lambda: self.supabase.table(self.table).insert(row).execute()
            )
        except Exception as e:
            logger.error(f"❌ [Archive] Failed to archive {workflow_id}: {e}")
            raise UpstreamUnavailable(f"Supabase archive failed: {e}") from e
        logger.info(f"✅ [Archive] Archived {workflow_id} to {self.table}")


class StatePersistence:
    """
    Checkpoint store on top of a KeyValueStore.

    Absence of a checkpoint is a normal None result; a store failure raises
    UpstreamUnavailable so callers can tell the two apart.
    """

    def __init__(self, store: KeyValueStore, default_ttl: int = 604800):
        self.store = store
        self.default_ttl = default_ttl

    @staticmethod
    def _key(workflow_id: str) -> str:
        return f"{CHECKPOINT_PREFIX}{workflow_id}"

    async def save(
        self,
        workflow_id: str,
        state: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Write a full snapshot.

        The first save starts the TTL clock; later saves keep the remaining TTL.
        """
        payload = {
            "checkpoint": state,
            "metadata": {
                **(metadata or {}),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "version": CHECKPOINT_VERSION,
            },
        }
        try:
            await self.store.set(
                self._key(workflow_id),
                json.dumps(payload),
                ttl=self.default_ttl,
                keep_ttl=True,
            )
        except Exception as e:
            logger.error(f"❌ [StatePersistence] Save failed for {workflow_id}: {e}")
            raise UpstreamUnavailable(f"Checkpoint store unavailable: {e}") from e
        logger.debug(f"💾 [StatePersistence] Saved checkpoint {workflow_id}")

    async def load_checkpoint(self, workflow_id: str) -> Optional[Checkpoint]:
        key = self._key(workflow_id)
        try:
            raw = await self.store.get(key)
            if raw is None:
                return None
            ttl = await self.store.ttl(key)
        except Exception as e:
            logger.error(f"❌ [StatePersistence] Load failed for {workflow_id}: {e}")
            raise UpstreamUnavailable(f"Checkpoint store unavailable: {e}") from e

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise UpstreamUnavailable(f"Checkpoint {workflow_id} is corrupt: {e}") from e

        return Checkpoint(
            id=workflow_id,
            state=payload.get("checkpoint") or {},
            metadata=payload.get("metadata") or {},
            ttl=ttl,
        )

    async def load(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        """State snapshot, or None when no checkpoint exists."""
        checkpoint = await self.load_checkpoint(workflow_id)
        return checkpoint.state if checkpoint else None

    async def delete(self, workflow_id: str) -> bool:
        try:
            deleted = await self.store.delete(self._key(workflow_id))
        except Exception as e:
            raise UpstreamUnavailable(f"Checkpoint store unavailable: {e}") from e
        if deleted:
            logger.debug(f"🗑️ [StatePersistence] Deleted checkpoint {workflow_id}")
        return deleted

    async def extend_ttl(self, workflow_id: str, seconds: int = 3600) -> bool:
        """Add seconds to the remaining TTL. Returns False if the checkpoint is gone."""
        key = self._key(workflow_id)
        try:
            remaining = await self.store.ttl(key)
            if remaining == -2:
                return False
            if remaining == -1:
                return True
            return await self.store.expire(key, remaining + seconds)
        except Exception as e:
            raise UpstreamUnavailable(f"Checkpoint store unavailable: {e}") from e

    async def list_checkpoints(self, prefix: str = "") -> List[str]:
        """Ids of live checkpoints whose id starts with prefix."""
        try:
            keys = await self.store.keys(self._key(prefix))
        except Exception as e:
            raise UpstreamUnavailable(f"Checkpoint store unavailable: {e}") from e
        return sorted(k[len(CHECKPOINT_PREFIX):] for k in keys)

    async def archive(self, workflow_id: str, long_term_store: LongTermStore) -> bool:
        """
        Copy the checkpoint to long-term storage, then delete it.

        Raises:
            NotFoundError: if there is nothing to archive
        """
        checkpoint = await self.load_checkpoint(workflow_id)
        if checkpoint is None:
            raise NotFoundError("Checkpoint", workflow_id)
        await long_term_store.archive(workflow_id, checkpoint.state, checkpoint.metadata)
        await self.delete(workflow_id)
        logger.info(f"📦 [StatePersistence] Archived checkpoint {workflow_id}")
        return True

    async def get_stats(self) -> Dict[str, Any]:
        checkpoints = await self.list_checkpoints()
        return {
            "total_checkpoints": len(checkpoints),
            "default_ttl": self.default_ttl,
            "version": CHECKPOINT_VERSION,
        }
