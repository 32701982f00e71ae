"""
Context-scoped encryption of arbitrary text ("vault").

Callers pick a context string that scopes the keys: tokens encrypted under
one context only decrypt and verify under that same context. Vault contexts
live in their own key namespace, separate from conversation ids.
"""

import logging
from typing import List, Union

from core.auth import AuthContext
from core.constants import VAULT_CONTEXT_PREFIX, VAULT_SEQUENCE_BASELINE
from core.crypto.codec import Message, MessageRole, decrypt_messages, pack_message_with_metrics, utcnow
from core.crypto.integrity import compute_root, verify_integrity
from core.crypto.key_derivation import conversation_keys
from core.errors import ValidationError
from schemas.conversation import IntegrityReport, MessageView
from schemas.vault import VaultDecryptResult, VaultEncryptResult, VaultMetadata

logger = logging.getLogger(__name__)


class VaultService:
    """Batch encrypt, decrypt and verify for a caller-chosen context."""

    def __init__(self, settings):
        self.settings = settings

    # =========================================================================
    # Validation
    # =========================================================================

    def _validate_context(self, context) -> str:
        if not isinstance(context, str) or not context:
            raise ValidationError("Context must be a non-empty string")
        if len(context) > self.settings.MAX_CONTEXT_LENGTH:
            raise ValidationError(
                f"Context must be {self.settings.MAX_CONTEXT_LENGTH} characters or fewer"
            )
        return VAULT_CONTEXT_PREFIX + context

    def _validate_items(self, data: Union[str, List[str]]) -> List[str]:
        items = [data] if isinstance(data, str) else data
        if not isinstance(items, list):
            raise ValidationError("Data must be a string or a list of strings")
        if not items:
            raise ValidationError("Data must not be empty")
        if len(items) > self.settings.MAX_BATCH_SIZE:
            raise ValidationError(f"Maximum {self.settings.MAX_BATCH_SIZE} items per request")
        for index, item in enumerate(items):
            if not isinstance(item, str) or not item:
                raise ValidationError(f"Item at index {index} must be a non-empty string", index=index)
            if len(item) > self.settings.MAX_CONTENT_LENGTH:
                raise ValidationError(f"Item at index {index} exceeds maximum size", index=index)
        return items

    def _validate_tokens(self, tokens, limit: int) -> List[str]:
        if not isinstance(tokens, list):
            raise ValidationError("Tokens must be a list of strings")
        if len(tokens) > limit:
            raise ValidationError(f"Maximum {limit} tokens per request")
        for index, token in enumerate(tokens):
            if not isinstance(token, str):
                raise ValidationError(f"Token at index {index} must be a string", index=index)
        return tokens

    # =========================================================================
    # Operations
    # =========================================================================

    def encrypt(self, auth: AuthContext, context: str, data: Union[str, List[str]]) -> VaultEncryptResult:
        """Encrypt a batch of items in order and chain them under one root."""
        scoped = self._validate_context(context)
        items = self._validate_items(data)

        tokens: List[str] = []
        original_bytes = 0
        encrypted_bytes = 0
        with conversation_keys(auth.master_secret, scoped) as keys:
            for offset, item in enumerate(items):
                message = Message(
                    role=MessageRole.USER,
                    content=item,
                    sequence=VAULT_SEQUENCE_BASELINE + offset,
                    timestamp=utcnow(),
                )
                token, metrics = pack_message_with_metrics(
                    message, keys.encryption_key, keys.context, self.settings.MAX_CONTENT_LENGTH
                )
                tokens.append(token)
                original_bytes += len(item.encode("utf-8"))
                encrypted_bytes += metrics.encrypted_bytes
            merkle_root = compute_root(tokens, keys.integrity_key)

        logger.info("Vault encrypted %d item(s) for user %s", len(tokens), auth.user_id)
        return VaultEncryptResult(
            context=context,
            tokens=tokens,
            merkle_root=merkle_root,
            metadata=VaultMetadata(
                item_count=len(tokens),
                original_bytes=original_bytes,
                encrypted_bytes=encrypted_bytes,
                compression_ratio=round(encrypted_bytes / original_bytes, 3) if original_bytes else 0.0,
            ),
        )

    def decrypt(self, auth: AuthContext, context: str, tokens: List[str]) -> VaultDecryptResult:
        """
        Decrypt a batch in order.

        Raises:
            DecryptionError / FormatError: With `index` set to the failing token
        """
        scoped = self._validate_context(context)
        tokens = self._validate_tokens(tokens, self.settings.MAX_BATCH_SIZE)
        if not tokens:
            raise ValidationError("Tokens must not be empty")

        with conversation_keys(auth.master_secret, scoped) as keys:
            messages = decrypt_messages(tokens, keys.encryption_key, keys.context)

        return VaultDecryptResult(
            context=context,
            data=[MessageView.from_message(m) for m in messages],
        )

    def verify(self, auth: AuthContext, context: str, tokens: List[str], merkle_root: str) -> IntegrityReport:
        """Check a batch against the root returned by encrypt()."""
        scoped = self._validate_context(context)
        tokens = self._validate_tokens(tokens, self.settings.MAX_VERIFY_TOKENS)
        if not isinstance(merkle_root, str) or not merkle_root:
            raise ValidationError("Merkle root is required")

        with conversation_keys(auth.master_secret, scoped) as keys:
            report = verify_integrity(
                tokens,
                merkle_root,
                keys.encryption_key,
                keys.integrity_key,
                keys.context,
                baseline=VAULT_SEQUENCE_BASELINE,
            )
        return IntegrityReport.from_report(report)
