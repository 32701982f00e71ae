"""
Conversation operations for an authenticated caller.

Derives the per-conversation keys for each call, hands mutations to the
MutationService and decrypts read windows. Keys never outlive the call that
derived them.
"""

import logging
from typing import List, Optional, Tuple

from core.auth import AuthContext
from core.crypto.codec import MessageRole, decrypt_messages, estimate_storage_size
from core.crypto.integrity import compute_root, verify_integrity
from core.crypto.key_derivation import conversation_keys
from core.errors import NotFoundError, ValidationError
from core.services.background import BackgroundDispatcher
from core.services.conversation_store import ConversationSnapshot, ConversationStore
from core.services.mutation_service import MutationService, root_is_current
from models.audit_log import AuditEventType
from schemas.conversation import (
    AppendResult,
    ConversationListResponse,
    ConversationSummary,
    ConversationView,
    DeleteResult,
    EditResult,
    IntegrityReport,
    MessageView,
)

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200


def _summary(snapshot: ConversationSnapshot) -> ConversationSummary:
    return ConversationSummary(
        id=snapshot.id,
        title=snapshot.title,
        model=snapshot.model,
        message_count=snapshot.message_count,
        merkle_root=snapshot.merkle_root,
        storage_bytes=estimate_storage_size(list(snapshot.tokens)),
        created_at=snapshot.created_at,
        updated_at=snapshot.updated_at,
    )


def _clean_title(title: Optional[str]) -> Optional[str]:
    if title is None:
        return None
    title = title.strip()
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title must be {MAX_TITLE_LENGTH} characters or fewer")
    return title or None


class ConversationService:
    """Facade over the store, the mutation protocol and the codec."""

    def __init__(
        self,
        store: ConversationStore,
        settings,
        mutations: Optional[MutationService] = None,
        audit=None,
        dispatcher: Optional[BackgroundDispatcher] = None,
    ):
        self.store = store
        self.settings = settings
        self.dispatcher = dispatcher or BackgroundDispatcher()
        self.audit = audit
        self.mutations = mutations or MutationService(
            store, settings, dispatcher=self.dispatcher, audit=audit
        )

    def _audit(self, event_type: AuditEventType, user_id: str, conversation_id: str, **data) -> None:
        if self.audit is None:
            return
        self.dispatcher.submit(
            self.audit.record(event_type, user_id, conversation_id, data or None),
            name=f"audit-{event_type.value}-{conversation_id}",
        )

    async def _require(self, auth: AuthContext, conversation_id: str) -> ConversationSnapshot:
        snapshot = await self.store.get(conversation_id, auth.user_id)
        if snapshot is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return snapshot

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_conversation(
        self,
        auth: AuthContext,
        title: Optional[str] = None,
        model: Optional[str] = None,
    ) -> ConversationSummary:
        snapshot = await self.store.create(
            auth.user_id,
            title=_clean_title(title),
            model=model or self.settings.DEFAULT_MODEL,
        )
        logger.info("Created conversation %s for user %s", snapshot.id, auth.user_id)
        self._audit(AuditEventType.CONVERSATION_CREATED, auth.user_id, snapshot.id)
        return _summary(snapshot)

    async def list_conversations(
        self,
        auth: AuthContext,
        limit: int = 50,
        offset: int = 0,
    ) -> ConversationListResponse:
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        snapshots, total = await self.store.list_for_user(auth.user_id, limit=limit, offset=offset)
        return ConversationListResponse(
            conversations=[_summary(s) for s in snapshots],
            total=total,
        )

    async def rename_conversation(
        self,
        auth: AuthContext,
        conversation_id: str,
        title: str,
    ) -> ConversationSummary:
        cleaned = _clean_title(title)
        if not cleaned:
            raise ValidationError("Title cannot be empty")
        snapshot = await self.store.rename(conversation_id, auth.user_id, cleaned)
        return _summary(snapshot)

    async def delete_conversation(self, auth: AuthContext, conversation_id: str) -> None:
        """Tombstone the conversation. It disappears from reads and lists."""
        await self.store.soft_delete(conversation_id, auth.user_id)
        logger.info("Soft-deleted conversation %s", conversation_id)
        self._audit(AuditEventType.CONVERSATION_DELETED, auth.user_id, conversation_id)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_conversation(
        self,
        auth: AuthContext,
        conversation_id: str,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> ConversationView:
        """
        Decrypt a window of messages.

        The stored root is checked against the whole token array on every
        read; the result reports it rather than failing so a client can still
        show a tampered conversation with a warning.
        """
        if limit is None:
            limit = self.settings.DEFAULT_VIEWPORT_LIMIT
        snapshot = await self._require(auth, conversation_id)

        with conversation_keys(auth.master_secret, conversation_id) as keys:
            root_verified = root_is_current(snapshot, keys.integrity_key)
            messages = decrypt_messages(
                list(snapshot.tokens), keys.encryption_key, keys.context, offset=offset, limit=limit
            )

        if not root_verified:
            logger.warning("Root mismatch reading conversation %s", conversation_id)
            self._audit(
                AuditEventType.INTEGRITY_FAILURE,
                auth.user_id,
                conversation_id,
                token_count=len(snapshot.tokens),
            )

        return ConversationView(
            conversation=_summary(snapshot),
            messages=[MessageView.from_message(m) for m in messages],
            offset=offset,
            limit=limit,
            has_more=offset + len(messages) < len(snapshot.tokens),
            root_verified=root_verified,
        )

    async def verify_conversation(self, auth: AuthContext, conversation_id: str) -> IntegrityReport:
        """Full verification: root plus in-order decryption and sequence continuity."""
        snapshot = await self._require(auth, conversation_id)

        with conversation_keys(auth.master_secret, conversation_id) as keys:
            if not snapshot.tokens and snapshot.merkle_root is None:
                # Never written: nothing to verify
                return IntegrityReport(
                    valid=True,
                    root_matches=True,
                    computed_root=compute_root((), keys.integrity_key),
                    token_count=0,
                )
            report = verify_integrity(
                snapshot.tokens,
                snapshot.merkle_root,
                keys.encryption_key,
                keys.integrity_key,
                keys.context,
                baseline=self.settings.SEQUENCE_BASELINE,
            )

        if not report.valid:
            self._audit(
                AuditEventType.INTEGRITY_FAILURE,
                auth.user_id,
                conversation_id,
                failed_index=report.failed_index,
                last_valid_sequence=report.last_valid_sequence,
            )
        return IntegrityReport.from_report(report)

    # =========================================================================
    # Mutations
    # =========================================================================

    async def append_messages(
        self,
        auth: AuthContext,
        conversation_id: str,
        messages: List[Tuple[MessageRole, str]],
    ) -> AppendResult:
        with conversation_keys(auth.master_secret, conversation_id) as keys:
            return await self.mutations.append_messages(keys, conversation_id, auth.user_id, messages)

    async def send_message(
        self,
        auth: AuthContext,
        conversation_id: str,
        content: str,
        assistant_content: Optional[str] = None,
    ) -> AppendResult:
        """Append a user message and, when given, the assistant reply in the same write."""
        messages = [(MessageRole.USER, content)]
        if assistant_content is not None:
            messages.append((MessageRole.ASSISTANT, assistant_content))
        return await self.append_messages(auth, conversation_id, messages)

    async def edit_message(
        self,
        auth: AuthContext,
        conversation_id: str,
        sequence: int,
        new_content: str,
        regenerate: bool = False,
    ) -> EditResult:
        with conversation_keys(auth.master_secret, conversation_id) as keys:
            return await self.mutations.edit(
                keys, conversation_id, auth.user_id, sequence, new_content, regenerate=regenerate
            )

    async def delete_messages(
        self,
        auth: AuthContext,
        conversation_id: str,
        sequence: int,
    ) -> DeleteResult:
        with conversation_keys(auth.master_secret, conversation_id) as keys:
            return await self.mutations.delete(keys, conversation_id, auth.user_id, sequence)
