"""
Audit recording for conversation events.

Entries carry metadata only (ids, sequence numbers, counts). Recording is
best-effort: a failed audit write is logged and never undoes or fails the
operation it describes. Callers schedule record() on a BackgroundDispatcher.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from models.audit_log import AuditEventType, AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """Writes AuditLog rows, each in its own short session."""

    def __init__(self, session_factory):
        """
        Args:
            session_factory: Callable returning an async context manager for AsyncSession
        """
        self._session_factory = session_factory

    async def record(
        self,
        event_type: AuditEventType,
        actor_user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        """Persist one audit entry. Returns None if the write failed."""
        entry = AuditLog.create(
            id=str(uuid.uuid4()),
            event_type=event_type,
            actor_user_id=actor_user_id,
            conversation_id=conversation_id,
            event_data=event_data,
        )
        try:
            async with self._session_factory() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to record audit event %s for %s: %s", event_type.value, conversation_id, e)
            return None
        return entry
