"""
Conversation model: one row per conversation holding its whole token array.

Security Note:
- message_tokens holds opaque AES-256-GCM tokens only; there is NO plaintext
- merkle_root is the keyed chain root over message_tokens; the server cannot
  recompute it without the user's derived integrity key

The (message_tokens, message_count, merkle_root) triple is only ever written
together, inside a row-locked transaction, with version bumped by one.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import ARRAY, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from .base import Base


class Conversation(Base):
    """Encrypted, integrity-chained conversation."""

    __tablename__ = "conversations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    title = Column(String, default="New Chat", nullable=False)
    model = Column(String, nullable=True)

    # =========================================================================
    # Encrypted token sequence (insertion order = sequence order)
    # =========================================================================

    message_tokens = Column(ARRAY(Text), default=list, nullable=False)
    message_count = Column(Integer, default=0, nullable=False)
    merkle_root = Column(String(64), nullable=True)

    # Bumped on every token write; used for conditional updates
    version = Column(Integer, default=0, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Tombstone (conversations are soft-deleted)
    deleted_at = Column(DateTime, nullable=True)
    deleted_by = Column(String, nullable=True)

    user = relationship("User", back_populates="conversations")

    __table_args__ = (
        Index("ix_conversations_user_deleted", "user_id", "deleted_at"),
        Index("ix_conversations_user_updated", "user_id", "updated_at"),
    )

    # =========================================================================
    # Factory Methods
    # =========================================================================

    @classmethod
    def create(
        cls,
        user_id: str,
        title: Optional[str] = None,
        model: Optional[str] = None,
        id: Optional[str] = None,
    ) -> "Conversation":
        """Create an empty conversation with all counters initialized."""
        now = datetime.utcnow()
        return cls(
            id=id or str(uuid.uuid4()),
            user_id=user_id,
            title=(title or "New Chat").strip() or "New Chat",
            model=model,
            message_tokens=[],
            message_count=0,
            merkle_root=None,
            version=0,
            created_at=now,
            updated_at=now,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def soft_delete(self, user_id: str) -> None:
        """Tombstone the conversation. Tokens stay until purged out of band."""
        self.deleted_at = datetime.utcnow()
        self.deleted_by = user_id
