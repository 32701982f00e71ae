"""
Audit log model for conversation events.

Security Note:
- Logs are append-only (never updated or deleted in normal operation)
- Contains NO message content, tokens or keys - only metadata such as
  sequence numbers and counts
- Deleted message content is never archived here
"""
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime, Enum, Index, String

from .base import Base


class AuditEventType(str, PyEnum):
    """Types of conversation events."""

    CONVERSATION_CREATED = "conversation_created"
    CONVERSATION_DELETED = "conversation_deleted"  # Soft delete (tombstone)

    MESSAGES_APPENDED = "messages_appended"
    MESSAGE_EDITED = "message_edited"  # Destructive: truncates everything after
    MESSAGES_DELETED = "messages_deleted"  # Destructive truncation

    INTEGRITY_FAILURE = "integrity_failure"


class AuditLog(Base):
    """
    Immutable audit log for conversation events.

    Fields:
        event_type: What happened
        actor_user_id: Who did it
        conversation_id: Which conversation
        event_data: Additional context (JSON, metadata only)
    """

    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True)  # UUID

    event_type = Column(Enum(AuditEventType), nullable=False)

    # No foreign keys: audit rows outlive the users and conversations they mention
    actor_user_id = Column(String, nullable=True)
    conversation_id = Column(String, nullable=True)

    # Note: Named 'event_data' instead of 'metadata' (reserved by SQLAlchemy)
    event_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_logs_event_type", "event_type"),
        Index("ix_audit_logs_actor", "actor_user_id"),
        Index("ix_audit_logs_conversation", "conversation_id"),
        Index("ix_audit_logs_created_at", "created_at"),
    )

    @classmethod
    def create(
        cls,
        id: str,
        event_type: AuditEventType,
        actor_user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> "AuditLog":
        """
        Create an audit log entry.

        Args:
            id: UUID for the log entry
            event_type: Type of event
            actor_user_id: User who performed the action
            conversation_id: Conversation affected (optional)
            event_data: Additional context (optional)
        """
        return cls(
            id=id,
            event_type=event_type,
            actor_user_id=actor_user_id,
            conversation_id=conversation_id,
            event_data=event_data,
            created_at=datetime.utcnow(),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type.value if isinstance(self.event_type, AuditEventType) else self.event_type,
            "actor_user_id": self.actor_user_id,
            "conversation_id": self.conversation_id,
            "event_data": self.event_data,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
