"""
Conversation store - the persistence collaborator for the mutation protocol.

A store provides:
1. Plain, lock-free reads of a conversation's current snapshot
2. A per-conversation write lock scoped to exactly one transaction
3. An atomic, version-conditional write of the (tokens, count, root) triple

Snapshots are immutable values. Every write produces a new snapshot with the
version bumped by one, so a reader always holds an internally consistent
token array + root, either from before or after a concurrent mutation.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from core.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# Data Structures
# =============================================================================


@dataclass(frozen=True)
class ConversationSnapshot:
    """Immutable view of one conversation row."""

    id: str
    user_id: str
    title: str
    model: Optional[str]
    tokens: Tuple[str, ...]
    message_count: int
    merkle_root: Optional[str]
    version: int
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_model(cls, conversation) -> "ConversationSnapshot":
        """Copy a Conversation ORM row into a detached snapshot."""
        return cls(
            id=conversation.id,
            user_id=conversation.user_id,
            title=conversation.title,
            model=conversation.model,
            tokens=tuple(conversation.message_tokens or ()),
            message_count=conversation.message_count or 0,
            merkle_root=conversation.merkle_root,
            version=conversation.version or 0,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            deleted_at=conversation.deleted_at,
            deleted_by=conversation.deleted_by,
        )


@dataclass(frozen=True)
class PendingWrite:
    """Token triple staged inside a transaction."""

    tokens: Tuple[str, ...]
    message_count: int
    merkle_root: str


class ConversationTransaction:
    """
    Handle for one locked mutation.

    The snapshot is read under the lock. write() only stages the new triple;
    the store persists it when the transaction block exits normally and
    discards it when the block raises or is cancelled.
    """

    def __init__(self, snapshot: ConversationSnapshot):
        self.snapshot = snapshot
        self._pending: Optional[PendingWrite] = None

    @property
    def pending(self) -> Optional[PendingWrite]:
        return self._pending

    def write(self, tokens: Sequence[str], message_count: int, merkle_root: str) -> None:
        """Stage a replacement (tokens, count, root) triple."""
        tokens = tuple(tokens)
        if message_count != len(tokens):
            raise ValidationError(
                f"Message count {message_count} does not match token count {len(tokens)}"
            )
        if not merkle_root:
            raise ValidationError("Merkle root is required")
        self._pending = PendingWrite(tokens=tokens, message_count=message_count, merkle_root=merkle_root)


# =============================================================================
# Store Interface
# =============================================================================


class ConversationStore(ABC):
    """Persistence collaborator for conversations."""

    @abstractmethod
    async def create(
        self,
        user_id: str,
        title: Optional[str] = None,
        model: Optional[str] = None,
    ) -> ConversationSnapshot:
        """Create an empty conversation."""
        pass

    @abstractmethod
    async def get(
        self,
        conversation_id: str,
        user_id: Optional[str] = None,
    ) -> Optional[ConversationSnapshot]:
        """Lock-free read. Tombstoned conversations and other users' rows are invisible."""
        pass

    @abstractmethod
    async def list_for_user(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ConversationSnapshot], int]:
        """Live conversations, most recently updated first, plus the total count."""
        pass

    @abstractmethod
    async def rename(self, conversation_id: str, user_id: str, title: str) -> ConversationSnapshot:
        """Update the title."""
        pass

    @abstractmethod
    async def soft_delete(self, conversation_id: str, user_id: str) -> ConversationSnapshot:
        """Tombstone the conversation."""
        pass

    @abstractmethod
    def transaction(
        self,
        conversation_id: str,
        user_id: Optional[str] = None,
    ):
        """
        Async context manager yielding a ConversationTransaction.

        Blocks while another transaction holds the same conversation.

        Raises:
            NotFoundError: If the conversation does not exist or is tombstoned
            ConflictError: If the conditional write lost to a concurrent writer
            InternalError: If the backing store failed (nothing was written)
        """
        pass


# =============================================================================
# In-Memory Store
# =============================================================================


class InMemoryConversationStore(ConversationStore):
    """
    In-process store for development and tests (STORE_MODE=memory).

    Each conversation gets an asyncio.Lock; committing is a single dict
    assignment of a new snapshot, so readers never see a partial write.
    """

    def __init__(self):
        self._rows: Dict[str, ConversationSnapshot] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            snapshot = self._rows.get(conversation_id)
            # Only live rows keep a lock; anything else fails in _load
            if snapshot is not None and not snapshot.is_deleted:
                self._locks[conversation_id] = lock
        return lock

    def _load(self, conversation_id: str, user_id: Optional[str]) -> ConversationSnapshot:
        snapshot = self._rows.get(conversation_id)
        if snapshot is None or snapshot.is_deleted:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if user_id is not None and snapshot.user_id != user_id:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return snapshot

    async def create(
        self,
        user_id: str,
        title: Optional[str] = None,
        model: Optional[str] = None,
    ) -> ConversationSnapshot:
        now = datetime.utcnow()
        snapshot = ConversationSnapshot(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=(title or "New Chat").strip() or "New Chat",
            model=model,
            tokens=(),
            message_count=0,
            merkle_root=None,
            version=0,
            created_at=now,
            updated_at=now,
        )
        self._rows[snapshot.id] = snapshot
        return snapshot

    async def get(
        self,
        conversation_id: str,
        user_id: Optional[str] = None,
    ) -> Optional[ConversationSnapshot]:
        try:
            return self._load(conversation_id, user_id)
        except NotFoundError:
            return None

    async def list_for_user(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ConversationSnapshot], int]:
        live = [s for s in self._rows.values() if s.user_id == user_id and not s.is_deleted]
        live.sort(key=lambda s: s.updated_at, reverse=True)
        return live[offset:offset + limit], len(live)

    async def rename(self, conversation_id: str, user_id: str, title: str) -> ConversationSnapshot:
        async with self._lock_for(conversation_id):
            current = self._load(conversation_id, user_id)
            updated = replace(current, title=title, updated_at=datetime.utcnow())
            self._rows[conversation_id] = updated
            return updated

    async def soft_delete(self, conversation_id: str, user_id: str) -> ConversationSnapshot:
        async with self._lock_for(conversation_id):
            current = self._load(conversation_id, user_id)
            updated = replace(current, deleted_at=datetime.utcnow(), deleted_by=user_id)
            self._rows[conversation_id] = updated
        # Tombstoned rows never mutate again; waiters on the old lock see NotFoundError
        self._locks.pop(conversation_id, None)
        return updated

    @asynccontextmanager
    async def transaction(
        self,
        conversation_id: str,
        user_id: Optional[str] = None,
    ) -> AsyncIterator[ConversationTransaction]:
        async with self._lock_for(conversation_id):
            snapshot = self._load(conversation_id, user_id)
            txn = ConversationTransaction(snapshot)

            yield txn

            pending = txn.pending
            if pending is None:
                return
            current = self._rows.get(conversation_id)
            if current is None or current.version != snapshot.version:
                raise ConflictError(f"Conversation {conversation_id} changed during the transaction")
            self._rows[conversation_id] = replace(
                current,
                tokens=pending.tokens,
                message_count=pending.message_count,
                merkle_root=pending.merkle_root,
                version=current.version + 1,
                updated_at=datetime.utcnow(),
            )


# =============================================================================
# Factory
# =============================================================================


def build_conversation_store(settings, session_factory=None) -> ConversationStore:
    """
    Build the store selected by STORE_MODE.

    - STORE_MODE=memory: InMemoryConversationStore
    - STORE_MODE=database: SQLConversationStore over the given (or default) session factory
    """
    if settings.STORE_MODE == "memory":
        logger.info("Using InMemoryConversationStore (development mode)")
        return InMemoryConversationStore()

    from core.services.sql_conversation_store import SQLConversationStore

    if session_factory is None:
        from core.database import get_session_factory

        session_factory = get_session_factory()
    logger.info("Using SQLConversationStore")
    return SQLConversationStore(session_factory)
