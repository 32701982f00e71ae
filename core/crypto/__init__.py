"""Cryptographic core: key hierarchy, message codec and integrity chain."""

from .primitives import (
    SecretBytes,
    generate_salt,
    secure_compare,
)
from .key_derivation import (
    ConversationKeys,
    conversation_keys,
    derive_conversation_key,
    derive_integrity_key,
    derive_master_secret,
    derive_user_key,
    generate_user_salt,
)
from .codec import (
    Message,
    MessageRole,
    TokenHeader,
    TokenMetrics,
    decrypt_messages,
    estimate_storage_size,
    pack_message,
    pack_message_with_metrics,
    peek_header,
    unpack_message,
)
from .integrity import (
    IntegrityReport,
    compute_root,
    verify_integrity,
    verify_root,
)

__all__ = [
    "SecretBytes",
    "generate_salt",
    "secure_compare",
    "ConversationKeys",
    "conversation_keys",
    "derive_conversation_key",
    "derive_integrity_key",
    "derive_master_secret",
    "derive_user_key",
    "generate_user_salt",
    "Message",
    "MessageRole",
    "TokenHeader",
    "TokenMetrics",
    "decrypt_messages",
    "estimate_storage_size",
    "pack_message",
    "pack_message_with_metrics",
    "peek_header",
    "unpack_message",
    "IntegrityReport",
    "compute_root",
    "verify_integrity",
    "verify_root",
]
