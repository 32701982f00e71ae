"""
Key derivation hierarchy.

    server secret + user salt --PBKDF2-SHA512, SHA-256--> MasterSecret
    MasterSecret              --HKDF-------------> UserKey
    UserKey + context         --HKDF (enc label)-> ConversationKey (AES-256-GCM only)
    UserKey + context         --HKDF (mac label)-> IntegrityKey    (HMAC chain only)

Every function here is pure. Nothing is cached: keys are re-derived per
request and wiped when the request is done with them.
"""
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from core.constants import (
    CONVERSATION_KEY_SALT,
    INTEGRITY_KEY_SALT,
    MASTER_SECRET_LABEL,
    USER_KEY_INFO,
    USER_KEY_SALT,
)
from core.crypto.primitives import (
    KEY_SIZE,
    SecretBytes,
    generate_salt,
    hkdf_sha256,
    pbkdf2_sha512,
    sha256_digest,
)

DEFAULT_ITERATIONS = 10000


def generate_user_salt() -> bytes:
    """Random 16-byte per-user salt. Persisted; the master secret is not."""
    return generate_salt(16)


def derive_master_secret(
    server_secret: bytes,
    user_salt: bytes,
    iterations: int = DEFAULT_ITERATIONS,
) -> SecretBytes:
    """
    Derive a user's MasterSecret from the server secret and their salt.

    This is the ONLY derivation path: password sessions and API-key requests
    both resolve here, so they always decrypt the same data.

    Raises:
        ValueError: If the server secret is shorter than 32 bytes or the salt is empty
    """
    if len(server_secret) < KEY_SIZE:
        raise ValueError("Server secret must be at least 32 bytes")
    if not user_salt:
        raise ValueError("User salt cannot be empty")

    prk = pbkdf2_sha512(server_secret, user_salt, iterations)
    return SecretBytes(sha256_digest(prk + MASTER_SECRET_LABEL))


def derive_user_key(master_secret) -> SecretBytes:
    """Expand a MasterSecret into the context-free UserKey."""
    return SecretBytes(hkdf_sha256(master_secret, salt=USER_KEY_SALT, info=USER_KEY_INFO))


def _context_info(context: str, purpose: str) -> bytes:
    if not isinstance(context, str) or not context:
        raise ValueError("Context must be a non-empty string")
    return f"conv-{context}-{purpose}".encode("utf-8")


def derive_conversation_key(user_key, context: str) -> SecretBytes:
    """AES-256-GCM key for one conversation (or vault context)."""
    return SecretBytes(
        hkdf_sha256(user_key, salt=CONVERSATION_KEY_SALT, info=_context_info(context, "aes256gcm"))
    )


def derive_integrity_key(user_key, context: str) -> SecretBytes:
    """HMAC-SHA256 chain key for one conversation (or vault context)."""
    return SecretBytes(
        hkdf_sha256(user_key, salt=INTEGRITY_KEY_SALT, info=_context_info(context, "hmac-sha256"))
    )


@dataclass(frozen=True)
class ConversationKeys:
    """Encryption and integrity keys for a single context."""

    context: str
    encryption_key: SecretBytes
    integrity_key: SecretBytes

    def wipe(self) -> None:
        self.encryption_key.wipe()
        self.integrity_key.wipe()


@contextmanager
def conversation_keys(master_secret, context: str) -> Iterator[ConversationKeys]:
    """
    Scoped acquisition of a context's keys.

    The intermediate UserKey is wiped before the block runs; the derived keys
    are wiped when the block exits, including on exceptions and cancellation.
    """
    with derive_user_key(master_secret) as user_key:
        keys = ConversationKeys(
            context=context,
            encryption_key=derive_conversation_key(user_key, context),
            integrity_key=derive_integrity_key(user_key, context),
        )
    try:
        yield keys
    finally:
        keys.wipe()
