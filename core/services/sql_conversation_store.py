"""
PostgreSQL-backed conversation store.

Mutations run inside one database transaction:

    SELECT ... FOR UPDATE      (row lock - serializes writers per conversation)
    -- caller reads snapshot, truncates/appends, recomputes root --
    UPDATE ... WHERE version = :read_version   (conditional atomic write)
    COMMIT                     (or ROLLBACK on any error/cancellation)

Readers never take the lock; MVCC gives them the last committed triple.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional, Tuple

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from core.errors import ConflictError, InternalError, NotFoundError
from core.services.conversation_store import (
    ConversationSnapshot,
    ConversationStore,
    ConversationTransaction,
)
from models.conversation import Conversation

logger = logging.getLogger(__name__)


class SQLConversationStore(ConversationStore):
    """Conversation store over an async SQLAlchemy session factory."""

    def __init__(self, session_factory):
        """
        Args:
            session_factory: Callable returning an async context manager for AsyncSession
        """
        self._session_factory = session_factory

    @staticmethod
    def _live_query(conversation_id: str, user_id: Optional[str]):
        conditions = [Conversation.id == conversation_id, Conversation.deleted_at.is_(None)]
        if user_id is not None:
            conditions.append(Conversation.user_id == user_id)
        return select(Conversation).where(and_(*conditions))

    async def create(
        self,
        user_id: str,
        title: Optional[str] = None,
        model: Optional[str] = None,
    ) -> ConversationSnapshot:
        conversation = Conversation.create(user_id=user_id, title=title, model=model)
        try:
            async with self._session_factory() as session:
                session.add(conversation)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to create conversation for user %s: %s", user_id, e)
            raise InternalError("Failed to create conversation") from e
        return ConversationSnapshot.from_model(conversation)

    async def get(
        self,
        conversation_id: str,
        user_id: Optional[str] = None,
    ) -> Optional[ConversationSnapshot]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(self._live_query(conversation_id, user_id))
                conversation = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to read conversation %s: %s", conversation_id, e)
            raise InternalError("Failed to read conversation") from e
        if conversation is None:
            return None
        return ConversationSnapshot.from_model(conversation)

    async def list_for_user(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ConversationSnapshot], int]:
        conditions = and_(Conversation.user_id == user_id, Conversation.deleted_at.is_(None))
        try:
            async with self._session_factory() as session:
                count_result = await session.execute(
                    select(func.count()).select_from(Conversation).where(conditions)
                )
                total = count_result.scalar() or 0

                result = await session.execute(
                    select(Conversation)
                    .where(conditions)
                    .order_by(Conversation.updated_at.desc())
                    .limit(limit)
                    .offset(offset)
                )
                conversations = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to list conversations for user %s: %s", user_id, e)
            raise InternalError("Failed to list conversations") from e
        return [ConversationSnapshot.from_model(c) for c in conversations], total

    @asynccontextmanager
    async def _locked_row(self, conversation_id: str, user_id: Optional[str]):
        """Open a transaction and lock the live row. Yields (session, row)."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        self._live_query(conversation_id, user_id).with_for_update()
                    )
                    conversation = result.scalar_one_or_none()
                    if conversation is None:
                        raise NotFoundError(f"Conversation {conversation_id} not found")
                    yield session, conversation
        except SQLAlchemyError as e:
            logger.error("Transaction on conversation %s rolled back: %s", conversation_id, e)
            raise InternalError("Persistence failure; no changes were written") from e

    async def rename(self, conversation_id: str, user_id: str, title: str) -> ConversationSnapshot:
        async with self._locked_row(conversation_id, user_id) as (_, conversation):
            conversation.title = title
            conversation.updated_at = datetime.utcnow()
            snapshot = ConversationSnapshot.from_model(conversation)
        return snapshot

    async def soft_delete(self, conversation_id: str, user_id: str) -> ConversationSnapshot:
        async with self._locked_row(conversation_id, user_id) as (_, conversation):
            conversation.soft_delete(user_id)
            snapshot = ConversationSnapshot.from_model(conversation)
        return snapshot

    @asynccontextmanager
    async def transaction(
        self,
        conversation_id: str,
        user_id: Optional[str] = None,
    ) -> AsyncIterator[ConversationTransaction]:
        async with self._locked_row(conversation_id, user_id) as (session, conversation):
            snapshot = ConversationSnapshot.from_model(conversation)
            txn = ConversationTransaction(snapshot)

            yield txn

            pending = txn.pending
            if pending is None:
                return
            result = await session.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.version == snapshot.version,
                )
                .values(
                    message_tokens=list(pending.tokens),
                    message_count=pending.message_count,
                    merkle_root=pending.merkle_root,
                    version=snapshot.version + 1,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(f"Conversation {conversation_id} changed during the transaction")
