"""Tests for the append / edit / delete mutation protocol."""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from unittest.mock import AsyncMock, patch

import pytest

from core.constants import SYSTEM_ACTOR_ID
from core.crypto.codec import MessageRole, decrypt_messages, pack_message
from core.crypto.integrity import compute_root, verify_integrity
from core.errors import ConflictError, IntegrityError, NotFoundError, ValidationError
from core.services.background import RegenerationRequest
from core.services.conversation_store import InMemoryConversationStore
from core.services.mutation_service import MutationService, locate_sequence
from models.audit_log import AuditEventType
from tests.factories import MessageFactory

USER_ID = "user_test_123"


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def regenerate_handler():
    return AsyncMock()


@pytest.fixture
def mock_audit():
    audit = AsyncMock()
    audit.record = AsyncMock(return_value=None)
    return audit


@pytest.fixture
def service(store, test_settings, dispatcher, mock_audit, regenerate_handler):
    return MutationService(
        store,
        test_settings,
        dispatcher=dispatcher,
        audit=mock_audit,
        on_regenerate=regenerate_handler,
    )


@pytest.fixture
async def conversation(store):
    return await store.create(USER_ID)


@pytest.fixture
def keys(conversation, keys_for):
    return keys_for(conversation.id)


@pytest.fixture
async def five_messages(service, conversation, keys, dispatcher, mock_audit):
    """Conversation holding sequences 1..5 (alternating user/assistant)."""
    roles = [MessageRole.USER, MessageRole.ASSISTANT] * 3
    await service.append_messages(
        keys,
        conversation.id,
        USER_ID,
        [(roles[i], f"message {i + 1}") for i in range(5)],
    )
    await dispatcher.drain()
    mock_audit.record.reset_mock()
    return conversation


async def _decrypted(store, conversation_id, keys):
    snapshot = await store.get(conversation_id)
    return decrypt_messages(list(snapshot.tokens), keys.encryption_key, keys.context)


# =============================================================================
# Append
# =============================================================================


class TestAppendMessages:

    @pytest.mark.asyncio
    async def test_assigns_sequences_from_baseline(self, service, store, conversation, keys):
        result = await service.append_messages(
            keys, conversation.id, USER_ID, [(MessageRole.USER, "hi"), (MessageRole.ASSISTANT, "hello")]
        )

        assert [m.sequence for m in result.messages] == [1, 2]
        assert result.message_count == 2
        snapshot = await store.get(conversation.id)
        assert snapshot.merkle_root == result.merkle_root
        assert snapshot.merkle_root == compute_root(snapshot.tokens, keys.integrity_key)

    @pytest.mark.asyncio
    async def test_continues_after_existing(self, service, store, five_messages, keys):
        result = await service.append_messages(keys, five_messages.id, USER_ID, [(MessageRole.USER, "six")])

        assert result.messages[0].sequence == 6
        snapshot = await store.get(five_messages.id)
        report = verify_integrity(
            snapshot.tokens, snapshot.merkle_root, keys.encryption_key, keys.integrity_key, keys.context
        )
        assert report.valid
        assert report.last_valid_sequence == 6

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, service, conversation, keys):
        with pytest.raises(ValidationError):
            await service.append_messages(keys, conversation.id, USER_ID, [])

    @pytest.mark.asyncio
    async def test_oversized_content_rejected_without_write(self, service, store, conversation, keys):
        service.settings = service.settings.model_copy(update={"MAX_CONTENT_LENGTH": 10})

        with pytest.raises(ValidationError):
            await service.append_messages(keys, conversation.id, USER_ID, [(MessageRole.USER, "x" * 11)])

        assert (await store.get(conversation.id)).version == 0

    @pytest.mark.asyncio
    async def test_audited_after_commit(self, service, conversation, keys, dispatcher, mock_audit):
        await service.append_messages(keys, conversation.id, USER_ID, [(MessageRole.USER, "hi")])
        await dispatcher.drain()

        mock_audit.record.assert_awaited_once_with(
            AuditEventType.MESSAGES_APPENDED,
            USER_ID,
            conversation.id,
            {"count": 1, "first_sequence": 1},
        )


class TestAppendRaw:

    @pytest.mark.asyncio
    async def test_strict_extension_accepted(self, service, store, five_messages, keys):
        snapshot = await store.get(five_messages.id)
        token = pack_message(MessageFactory(sequence=6), keys.encryption_key, keys.context)
        tokens = snapshot.tokens + (token,)

        await service.append(keys, five_messages.id, tokens, 6, compute_root(tokens, keys.integrity_key))

        assert (await store.get(five_messages.id)).message_count == 6

    @pytest.mark.asyncio
    async def test_divergent_prefix_rejected(self, service, store, five_messages, keys):
        snapshot = await store.get(five_messages.id)
        token = pack_message(MessageFactory(sequence=6), keys.encryption_key, keys.context)
        tokens = snapshot.tokens[:4] + (token, token)

        with pytest.raises(ConflictError, match="strict extension"):
            await service.append(keys, five_messages.id, tokens, 6, compute_root(tokens, keys.integrity_key))

        assert (await store.get(five_messages.id)).tokens == snapshot.tokens

    @pytest.mark.asyncio
    async def test_same_length_rejected(self, service, store, five_messages, keys):
        snapshot = await store.get(five_messages.id)

        with pytest.raises(ConflictError):
            await service.append(keys, five_messages.id, snapshot.tokens, 5, snapshot.merkle_root)

    @pytest.mark.asyncio
    async def test_count_mismatch_rejected(self, service, store, five_messages, keys):
        snapshot = await store.get(five_messages.id)
        token = pack_message(MessageFactory(sequence=6), keys.encryption_key, keys.context)
        tokens = snapshot.tokens + (token,)

        with pytest.raises(ValidationError):
            await service.append(keys, five_messages.id, tokens, 7, compute_root(tokens, keys.integrity_key))

    @pytest.mark.asyncio
    async def test_wrong_root_rejected_without_write(self, service, store, five_messages, keys):
        snapshot = await store.get(five_messages.id)
        token = pack_message(MessageFactory(sequence=6), keys.encryption_key, keys.context)
        tokens = snapshot.tokens + (token,)

        with pytest.raises(IntegrityError):
            await service.append(keys, five_messages.id, tokens, 6, "deadbeef" * 8)

        after = await store.get(five_messages.id)
        assert after == snapshot
        assert verify_integrity(
            after.tokens, after.merkle_root, keys.encryption_key, keys.integrity_key, keys.context
        ).valid

        # Still mutable afterwards
        result = await service.delete(keys, five_messages.id, USER_ID, 5)
        assert result.message_count == 4

    @pytest.mark.asyncio
    async def test_root_of_previous_array_rejected(self, service, store, five_messages, keys):
        snapshot = await store.get(five_messages.id)
        token = pack_message(MessageFactory(sequence=6), keys.encryption_key, keys.context)

        with pytest.raises(IntegrityError):
            await service.append(keys, five_messages.id, snapshot.tokens + (token,), 6, snapshot.merkle_root)

        assert (await store.get(five_messages.id)).version == snapshot.version

    @pytest.mark.asyncio
    async def test_tampered_conversation_not_reanchored(self, service, store, five_messages, keys, dispatcher, mock_audit):
        snapshot = await store.get(five_messages.id)
        tampered = replace(snapshot, tokens=snapshot.tokens[:4])
        store._rows[five_messages.id] = tampered
        token = pack_message(MessageFactory(sequence=5), keys.encryption_key, keys.context)
        tokens = tampered.tokens + (token,)

        with pytest.raises(IntegrityError):
            await service.append(keys, five_messages.id, tokens, 5, compute_root(tokens, keys.integrity_key))
        await dispatcher.drain()

        assert await store.get(five_messages.id) == tampered
        event_types = [c.args[0] for c in mock_audit.record.await_args_list]
        assert AuditEventType.INTEGRITY_FAILURE in event_types

    @pytest.mark.asyncio
    async def test_collaborator_append_audited_as_system(self, service, store, five_messages, keys, dispatcher, mock_audit):
        snapshot = await store.get(five_messages.id)
        token = pack_message(MessageFactory(sequence=6), keys.encryption_key, keys.context)
        tokens = snapshot.tokens + (token,)

        await service.append(keys, five_messages.id, tokens, 6, compute_root(tokens, keys.integrity_key))
        await dispatcher.drain()

        mock_audit.record.assert_awaited_once_with(
            AuditEventType.MESSAGES_APPENDED, SYSTEM_ACTOR_ID, five_messages.id, {"count": 1}
        )


# =============================================================================
# Edit
# =============================================================================


class TestEdit:

    @pytest.mark.asyncio
    async def test_truncates_and_replaces(self, service, store, five_messages, keys):
        result = await service.edit(keys, five_messages.id, USER_ID, 3, "edited three")

        messages = await _decrypted(store, five_messages.id, keys)
        assert [m.sequence for m in messages] == [1, 2, 3]
        assert [m.content for m in messages] == ["message 1", "message 2", "edited three"]
        assert result.message_count == 3
        assert result.deleted_count == 2
        assert result.space_reclaimed > 0
        assert result.needs_regeneration_from is None

        snapshot = await store.get(five_messages.id)
        assert snapshot.message_count == 3
        assert snapshot.merkle_root == result.merkle_root
        report = verify_integrity(
            snapshot.tokens, snapshot.merkle_root, keys.encryption_key, keys.integrity_key, keys.context
        )
        assert report.valid
        assert report.last_valid_sequence == 3

    @pytest.mark.asyncio
    async def test_keeps_role_and_refreshes_timestamp(self, service, store, five_messages, keys):
        before = (await _decrypted(store, five_messages.id, keys))[1]

        result = await service.edit(keys, five_messages.id, USER_ID, 2, "new reply")

        assert before.role is MessageRole.ASSISTANT
        assert result.message.role is MessageRole.ASSISTANT
        assert result.message.timestamp >= before.timestamp

    @pytest.mark.asyncio
    async def test_edit_last_message(self, service, store, five_messages, keys):
        result = await service.edit(keys, five_messages.id, USER_ID, 5, "last")
        assert result.message_count == 5
        assert result.deleted_count == 0

    @pytest.mark.asyncio
    async def test_missing_sequence_has_no_side_effects(self, service, store, five_messages, keys, regenerate_handler):
        before = await store.get(five_messages.id)

        with pytest.raises(NotFoundError) as exc_info:
            await service.edit(keys, five_messages.id, USER_ID, 9, "nope", regenerate=True)

        assert exc_info.value.sequence == 9
        assert await store.get(five_messages.id) == before
        regenerate_handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_regenerate_signals_after_commit(self, service, five_messages, keys, dispatcher, regenerate_handler):
        result = await service.edit(keys, five_messages.id, USER_ID, 3, "again?", regenerate=True)
        await dispatcher.drain()

        assert result.needs_regeneration_from == 3
        regenerate_handler.assert_awaited_once_with(
            RegenerationRequest(conversation_id=five_messages.id, user_id=USER_ID, from_sequence=3)
        )

    @pytest.mark.asyncio
    async def test_regeneration_failure_does_not_fail_edit(self, service, store, five_messages, keys, dispatcher, regenerate_handler):
        regenerate_handler.side_effect = RuntimeError("generator down")

        result = await service.edit(keys, five_messages.id, USER_ID, 3, "again?", regenerate=True)
        await dispatcher.drain()

        assert result.message_count == 3
        assert (await store.get(five_messages.id)).message_count == 3

    @pytest.mark.asyncio
    async def test_audited(self, service, five_messages, keys, dispatcher, mock_audit):
        await service.edit(keys, five_messages.id, USER_ID, 3, "edited", regenerate=True)
        await dispatcher.drain()

        mock_audit.record.assert_awaited_once_with(
            AuditEventType.MESSAGE_EDITED,
            USER_ID,
            five_messages.id,
            {"sequence": 3, "deleted_count": 2, "regenerate": True},
        )

    @pytest.mark.asyncio
    async def test_negative_sequence(self, service, five_messages, keys):
        with pytest.raises(ValidationError):
            await service.edit(keys, five_messages.id, USER_ID, -1, "x")


# =============================================================================
# Delete
# =============================================================================


class TestDelete:

    @pytest.mark.asyncio
    async def test_truncates_from_target(self, service, store, five_messages, keys, dispatcher, regenerate_handler):
        result = await service.delete(keys, five_messages.id, USER_ID, 3)
        await dispatcher.drain()

        messages = await _decrypted(store, five_messages.id, keys)
        assert [m.sequence for m in messages] == [1, 2]
        assert result.message_count == 2
        assert result.deleted_count == 3
        assert (await store.get(five_messages.id)).merkle_root == result.merkle_root
        regenerate_handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_everything_then_append(self, service, store, five_messages, keys):
        result = await service.delete(keys, five_messages.id, USER_ID, 1)

        assert result.message_count == 0
        assert result.merkle_root == compute_root([], keys.integrity_key)

        appended = await service.append_messages(keys, five_messages.id, USER_ID, [(MessageRole.USER, "fresh")])
        assert appended.messages[0].sequence == 1

    @pytest.mark.asyncio
    async def test_missing_sequence(self, service, store, five_messages, keys):
        before = await store.get(five_messages.id)
        with pytest.raises(NotFoundError):
            await service.delete(keys, five_messages.id, USER_ID, 6)
        assert await store.get(five_messages.id) == before

    @pytest.mark.asyncio
    async def test_missing_conversation(self, service, keys):
        with pytest.raises(NotFoundError):
            await service.delete(keys, "missing", USER_ID, 1)


# =============================================================================
# Integrity guard / rollback
# =============================================================================


class TestIntegrityGuard:

    @pytest.mark.asyncio
    async def test_refuses_to_mutate_tampered_conversation(self, service, store, five_messages, keys, dispatcher, mock_audit):
        snapshot = await store.get(five_messages.id)
        store._rows[five_messages.id] = replace(snapshot, tokens=snapshot.tokens[:4])

        with pytest.raises(IntegrityError):
            await service.edit(keys, five_messages.id, USER_ID, 2, "x")
        await dispatcher.drain()

        assert (await store.get(five_messages.id)).tokens == snapshot.tokens[:4]
        event_types = [c.args[0] for c in mock_audit.record.await_args_list]
        assert AuditEventType.INTEGRITY_FAILURE in event_types

    @pytest.mark.asyncio
    async def test_wrong_keys_refused(self, service, five_messages, keys_for):
        other_keys = keys_for("some-other-conversation")
        with pytest.raises(IntegrityError):
            await service.delete(other_keys, five_messages.id, USER_ID, 2)


class TestRollback:

    @pytest.mark.asyncio
    async def test_failure_mid_mutation_leaves_state_intact(self, service, store, five_messages, keys):
        before = await store.get(five_messages.id)

        with patch("core.services.mutation_service.compute_root", side_effect=RuntimeError("crash")):
            with pytest.raises(RuntimeError):
                await service.edit(keys, five_messages.id, USER_ID, 3, "lost")

        assert await store.get(five_messages.id) == before

        # Lock was released
        result = await service.delete(keys, five_messages.id, USER_ID, 4)
        assert result.message_count == 3


# =============================================================================
# Concurrency
# =============================================================================


class GatedStore(InMemoryConversationStore):
    """In-memory store that suspends inside the locked region until `gate` is set."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.entered = 0

    @asynccontextmanager
    async def transaction(self, conversation_id, user_id=None):
        async with super().transaction(conversation_id, user_id) as txn:
            self.entered += 1
            await self.gate.wait()
            yield txn


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_second_mutation_waits_for_first_commit(self, test_settings, dispatcher, keys_for):
        gated = GatedStore()
        service = MutationService(gated, test_settings, dispatcher=dispatcher)
        conversation = await gated.create(USER_ID)
        keys = keys_for(conversation.id)

        gated.gate.set()
        await service.append_messages(
            keys, conversation.id, USER_ID, [(MessageRole.USER, f"message {i}") for i in range(1, 6)]
        )
        gated.gate.clear()
        gated.entered = 0

        first = asyncio.ensure_future(service.edit(keys, conversation.id, USER_ID, 3, "edit A"))
        second = asyncio.ensure_future(service.edit(keys, conversation.id, USER_ID, 3, "edit B"))
        for _ in range(10):
            await asyncio.sleep(0)

        # First holds the lock; second has not entered the critical section
        assert gated.entered == 1
        assert (await gated.get(conversation.id)).version == 1

        gated.gate.set()
        result_a, result_b = await asyncio.gather(first, second)

        snapshot = await gated.get(conversation.id)
        messages = decrypt_messages(list(snapshot.tokens), keys.encryption_key, keys.context)
        assert gated.entered == 2
        assert snapshot.version == 3
        assert result_a.message_count == 3
        assert result_b.deleted_count == 0
        assert snapshot.merkle_root == result_b.merkle_root
        assert [m.sequence for m in messages] == [1, 2, 3]
        assert [m.content for m in messages] == ["message 1", "message 2", "edit B"]
        assert verify_integrity(
            snapshot.tokens, snapshot.merkle_root, keys.encryption_key, keys.integrity_key, keys.context
        ).valid

    @pytest.mark.asyncio
    async def test_concurrent_edits_serialize(self, service, store, five_messages, keys):
        results = await asyncio.gather(
            service.edit(keys, five_messages.id, USER_ID, 3, "edit A"),
            service.edit(keys, five_messages.id, USER_ID, 3, "edit B"),
        )

        snapshot = await store.get(five_messages.id)
        messages = await _decrypted(store, five_messages.id, keys)

        assert snapshot.message_count == 3
        assert [m.sequence for m in messages] == [1, 2, 3]
        assert messages[2].content in ("edit A", "edit B")
        assert snapshot.merkle_root in {r.merkle_root for r in results}
        assert verify_integrity(
            snapshot.tokens, snapshot.merkle_root, keys.encryption_key, keys.integrity_key, keys.context
        ).valid

    @pytest.mark.asyncio
    async def test_edit_and_delete_race(self, service, store, five_messages, keys):
        outcomes = await asyncio.gather(
            service.edit(keys, five_messages.id, USER_ID, 4, "edit"),
            service.delete(keys, five_messages.id, USER_ID, 2),
            return_exceptions=True,
        )

        assert not any(isinstance(o, Exception) for o in outcomes)
        snapshot = await store.get(five_messages.id)
        assert snapshot.message_count == 1
        assert verify_integrity(
            snapshot.tokens, snapshot.merkle_root, keys.encryption_key, keys.integrity_key, keys.context
        ).valid

    @pytest.mark.asyncio
    async def test_concurrent_appends_keep_sequences_gap_free(self, service, store, conversation, keys):
        await asyncio.gather(*[
            service.append_messages(keys, conversation.id, USER_ID, [(MessageRole.USER, f"m{i}")])
            for i in range(5)
        ])

        messages = await _decrypted(store, conversation.id, keys)
        assert [m.sequence for m in messages] == [1, 2, 3, 4, 5]


class TestLocateSequence:

    def test_finds_by_header(self, keys_for):
        keys = keys_for("conv-locate")
        tokens = [
            pack_message(MessageFactory(sequence=i), keys.encryption_key, keys.context)
            for i in (1, 2, 3)
        ]
        assert locate_sequence(tokens, 2) == 1

    def test_missing(self):
        with pytest.raises(NotFoundError):
            locate_sequence([], 1)
