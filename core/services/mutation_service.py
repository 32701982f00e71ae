"""
Mutation protocol for a conversation's token sequence.

Every mutation is one store transaction:

    lock -> read snapshot -> check stored root -> build new token array
         -> recompute root -> stage (tokens, count, root) -> commit -> unlock

Edit and delete are destructive: everything after the target sequence is
discarded, with no archive. Side effects that must not block or fail the
mutation (audit entries, the regeneration signal) are dispatched only after
the commit succeeded.
"""

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from core.constants import SYSTEM_ACTOR_ID
from core.crypto.codec import (
    Message,
    MessageRole,
    estimate_storage_size,
    pack_message,
    peek_header,
    unpack_message,
    utcnow,
)
from core.crypto.integrity import compute_root, verify_root
from core.crypto.key_derivation import ConversationKeys
from core.errors import ConflictError, FormatError, IntegrityError, NotFoundError, ValidationError
from core.services.background import BackgroundDispatcher, RegenerationHandler, RegenerationRequest
from core.services.conversation_store import ConversationSnapshot, ConversationStore
from models.audit_log import AuditEventType
from schemas.conversation import AppendResult, DeleteResult, EditResult, MessageView

logger = logging.getLogger(__name__)


def root_is_current(snapshot: ConversationSnapshot, integrity_key) -> bool:
    """Whether the snapshot's stored root matches its tokens. A fresh conversation has no root."""
    if not snapshot.tokens and snapshot.merkle_root is None:
        return True
    return verify_root(snapshot.tokens, snapshot.merkle_root, integrity_key)


def locate_sequence(tokens: Sequence[str], sequence: int) -> int:
    """
    Index of the token carrying `sequence` in its header.

    Raises:
        FormatError: If a token's header cannot be read
        NotFoundError: If no token carries the sequence
    """
    for index, token in enumerate(tokens):
        header = peek_header(token)
        if header is None:
            raise FormatError(f"Unreadable token header at index {index}", index=index)
        if header.sequence == sequence:
            return index
    raise NotFoundError(f"Message with sequence {sequence} not found", sequence=sequence)


class MutationService:
    """Append, edit and delete against one conversation at a time."""

    def __init__(
        self,
        store: ConversationStore,
        settings,
        dispatcher: Optional[BackgroundDispatcher] = None,
        audit=None,
        on_regenerate: Optional[RegenerationHandler] = None,
    ):
        """
        Args:
            store: Persistence collaborator providing per-conversation transactions
            settings: Settings (sequence baseline, content limit)
            dispatcher: Where audit writes and regeneration signals are scheduled
            audit: Optional AuditService
            on_regenerate: Optional generation collaborator, signalled after edits
        """
        self.store = store
        self.settings = settings
        self.dispatcher = dispatcher or BackgroundDispatcher()
        self.audit = audit
        self.on_regenerate = on_regenerate

    # =========================================================================
    # Side effects (after commit only)
    # =========================================================================

    def _audit(self, event_type: AuditEventType, user_id: Optional[str], conversation_id: str, **data) -> None:
        if self.audit is None:
            return
        self.dispatcher.submit(
            self.audit.record(event_type, user_id, conversation_id, data or None),
            name=f"audit-{event_type.value}-{conversation_id}",
        )

    def _signal_regeneration(self, conversation_id: str, user_id: str, from_sequence: int) -> None:
        if self.on_regenerate is None:
            logger.debug("Regeneration requested for %s but no handler is configured", conversation_id)
            return
        request = RegenerationRequest(
            conversation_id=conversation_id,
            user_id=user_id,
            from_sequence=from_sequence,
        )
        self.dispatcher.submit(self.on_regenerate(request), name=f"regenerate-{conversation_id}")

    def _check_root(self, snapshot: ConversationSnapshot, keys: ConversationKeys, user_id: Optional[str]) -> None:
        """Refuse to rewrite a sequence whose stored root no longer matches."""
        if root_is_current(snapshot, keys.integrity_key):
            return
        logger.warning("Stored root mismatch on conversation %s; mutation refused", snapshot.id)
        self._audit(
            AuditEventType.INTEGRITY_FAILURE,
            user_id,
            snapshot.id,
            token_count=len(snapshot.tokens),
        )
        raise IntegrityError(f"Conversation {snapshot.id} failed integrity check")

    # =========================================================================
    # Append
    # =========================================================================

    async def append(
        self,
        keys: ConversationKeys,
        conversation_id: str,
        new_tokens: Sequence[str],
        new_count: int,
        new_root: str,
        user_id: Optional[str] = None,
    ) -> None:
        """
        Persist an already-extended token array.

        The caller packed the new tokens and computed the root. Under the lock
        the stored root must still match the stored tokens, the new array must
        be a strict extension of them, and new_root must be the root of the
        new array. Only then is the triple written.

        Raises:
            IntegrityError: If the stored root is stale or new_root does not match new_tokens
            ConflictError: If new_tokens is not a strict extension of the stored array
            ValidationError: If new_count does not match new_tokens
        """
        new_tokens = tuple(new_tokens)
        actor = user_id or SYSTEM_ACTOR_ID
        async with self.store.transaction(conversation_id, user_id) as txn:
            self._check_root(txn.snapshot, keys, actor)
            current = txn.snapshot.tokens
            if len(new_tokens) <= len(current) or new_tokens[:len(current)] != current:
                raise ConflictError(
                    f"Append to conversation {conversation_id} is not a strict extension "
                    f"of the stored {len(current)} token(s)"
                )
            if not verify_root(new_tokens, new_root, keys.integrity_key):
                logger.warning("Rejected append to conversation %s: root does not match tokens", conversation_id)
                raise IntegrityError(f"Supplied root does not match the tokens for conversation {conversation_id}")
            txn.write(new_tokens, new_count, new_root)
            appended = len(new_tokens) - len(current)

        logger.info("Appended %d token(s) to conversation %s", appended, conversation_id)
        self._audit(AuditEventType.MESSAGES_APPENDED, actor, conversation_id, count=appended)

    async def append_messages(
        self,
        keys: ConversationKeys,
        conversation_id: str,
        user_id: str,
        messages: Iterable[Tuple[MessageRole, str]],
    ) -> AppendResult:
        """
        Pack messages at the next sequence numbers and append them.

        Args:
            keys: Keys for this conversation
            conversation_id: Target conversation
            user_id: Owner
            messages: (role, content) pairs in order

        Raises:
            ValidationError: If no messages are given or content is too long
            NotFoundError: If the conversation does not exist
            IntegrityError: If the stored root does not match the stored tokens
        """
        messages = list(messages)
        if not messages:
            raise ValidationError("At least one message is required")

        async with self.store.transaction(conversation_id, user_id) as txn:
            snapshot = txn.snapshot
            self._check_root(snapshot, keys, user_id)

            next_sequence = self.settings.SEQUENCE_BASELINE + len(snapshot.tokens)
            packed: List[Message] = []
            new_tokens: List[str] = []
            for offset, (role, content) in enumerate(messages):
                message = Message(
                    role=role,
                    content=content,
                    sequence=next_sequence + offset,
                    timestamp=utcnow(),
                )
                new_tokens.append(
                    pack_message(message, keys.encryption_key, keys.context, self.settings.MAX_CONTENT_LENGTH)
                )
                packed.append(message)

            tokens = snapshot.tokens + tuple(new_tokens)
            root = compute_root(tokens, keys.integrity_key)
            txn.write(tokens, len(tokens), root)

        logger.info("Appended %d message(s) to conversation %s", len(packed), conversation_id)
        self._audit(
            AuditEventType.MESSAGES_APPENDED,
            user_id,
            conversation_id,
            count=len(packed),
            first_sequence=packed[0].sequence,
        )
        return AppendResult(
            conversation_id=conversation_id,
            messages=[MessageView.from_message(m) for m in packed],
            message_count=len(tokens),
            merkle_root=root,
            storage_bytes=estimate_storage_size(list(tokens)),
        )

    # =========================================================================
    # Destructive edit / delete
    # =========================================================================

    async def edit(
        self,
        keys: ConversationKeys,
        conversation_id: str,
        user_id: str,
        sequence: int,
        new_content: str,
        regenerate: bool = False,
    ) -> EditResult:
        """
        Replace the message at `sequence` and discard everything after it.

        The replacement keeps the original sequence and role and gets a fresh
        timestamp. If `regenerate` is set the generation collaborator is
        signalled after the commit; the signal is fire-and-forget.

        Raises:
            NotFoundError: If the conversation or sequence does not exist (nothing written)
            IntegrityError: If the stored root does not match the stored tokens
            ValidationError: If the new content is too long
        """
        if sequence < 0:
            raise ValidationError(f"Invalid sequence: {sequence}")

        async with self.store.transaction(conversation_id, user_id) as txn:
            snapshot = txn.snapshot
            self._check_root(snapshot, keys, user_id)

            index = locate_sequence(snapshot.tokens, sequence)
            original = unpack_message(snapshot.tokens[index], keys.encryption_key, keys.context)

            replacement = Message(
                role=original.role,
                content=new_content,
                sequence=sequence,
                timestamp=utcnow(),
            )
            token = pack_message(replacement, keys.encryption_key, keys.context, self.settings.MAX_CONTENT_LENGTH)

            tokens = snapshot.tokens[:index] + (token,)
            root = compute_root(tokens, keys.integrity_key)
            txn.write(tokens, index + 1, root)

        deleted_count = len(snapshot.tokens) - index - 1
        space_reclaimed = max(
            0, estimate_storage_size(list(snapshot.tokens)) - estimate_storage_size(list(tokens))
        )
        logger.warning(
            "Destructive edit on conversation %s at sequence %d: %d later message(s) removed",
            conversation_id, sequence, deleted_count,
        )

        self._audit(
            AuditEventType.MESSAGE_EDITED,
            user_id,
            conversation_id,
            sequence=sequence,
            deleted_count=deleted_count,
            regenerate=regenerate,
        )
        if regenerate:
            self._signal_regeneration(conversation_id, user_id, sequence)

        return EditResult(
            conversation_id=conversation_id,
            edited_sequence=sequence,
            message=MessageView.from_message(replacement),
            deleted_count=deleted_count,
            space_reclaimed=space_reclaimed,
            message_count=len(tokens),
            merkle_root=root,
            needs_regeneration_from=sequence if regenerate else None,
        )

    async def delete(
        self,
        keys: ConversationKeys,
        conversation_id: str,
        user_id: str,
        sequence: int,
    ) -> DeleteResult:
        """
        Remove the message at `sequence` and everything after it.

        Never signals regeneration.

        Raises:
            NotFoundError: If the conversation or sequence does not exist (nothing written)
            IntegrityError: If the stored root does not match the stored tokens
        """
        if sequence < 0:
            raise ValidationError(f"Invalid sequence: {sequence}")

        async with self.store.transaction(conversation_id, user_id) as txn:
            snapshot = txn.snapshot
            self._check_root(snapshot, keys, user_id)

            index = locate_sequence(snapshot.tokens, sequence)
            tokens = snapshot.tokens[:index]
            root = compute_root(tokens, keys.integrity_key)
            txn.write(tokens, index, root)

        deleted_count = len(snapshot.tokens) - index
        space_reclaimed = max(
            0, estimate_storage_size(list(snapshot.tokens)) - estimate_storage_size(list(tokens))
        )
        logger.warning(
            "Destructive delete on conversation %s from sequence %d: %d message(s) removed",
            conversation_id, sequence, deleted_count,
        )

        self._audit(
            AuditEventType.MESSAGES_DELETED,
            user_id,
            conversation_id,
            sequence=sequence,
            deleted_count=deleted_count,
        )

        return DeleteResult(
            conversation_id=conversation_id,
            deleted_sequence=sequence,
            deleted_count=deleted_count,
            space_reclaimed=space_reclaimed,
            message_count=len(tokens),
            merkle_root=root,
        )
