"""Database models for the encrypted conversation store."""

from .base import Base
from .user import User
from .conversation import Conversation
from .audit_log import AuditLog, AuditEventType

__all__ = [
    "Base",
    "User",
    "Conversation",
    "AuditLog",
    "AuditEventType",
]
