"""
Message codec: logical Message <-> opaque token string.

Token layout (base64url, unpadded):

    [0]       version   (1 byte)  = 0x01
    [1]       flags     (1 byte)  bit 0 = payload is zlib-compressed
    [2]       role      (1 byte)  0 = user, 1 = assistant, 2 = system
    [3-6]     sequence  (4 bytes) uint32 big-endian
    [7-22]    nonce     (16 bytes)
    [23..n]   ciphertext
    [n+1..]   auth tag  (16 bytes)

The encrypted payload is the JSON serialization of
{content, sequence, timestamp (ms), content_hash}, compressed when that
saves space. The 7-byte header plus the context string form the AES-GCM
associated data, so a token only decrypts at its own sequence number and in
its own conversation.
"""
import base64
import binascii
import hashlib
import logging
import re
import struct
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from core.constants import (
    COMPRESSION_LEVEL,
    FLAG_COMPRESSED,
    HEADER_SIZE,
    KNOWN_FLAGS,
    MAX_SEQUENCE,
    NONCE_SIZE,
    TAG_SIZE,
    TOKEN_VERSION,
)
from core.crypto.primitives import decrypt_aes_gcm, encrypt_aes_gcm
from core.errors import DecryptionError, FormatError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTENT_LENGTH = 100_000

_HEADER = struct.Struct(">BBBI")
_TOKEN_ALPHABET = re.compile(r"^[A-Za-z0-9_-]+$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


class MessageRole(str, Enum):
    """Message role in conversation."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


_ROLE_TO_BYTE = {MessageRole.USER: 0, MessageRole.ASSISTANT: 1, MessageRole.SYSTEM: 2}
_BYTE_TO_ROLE = {v: k for k, v in _ROLE_TO_BYTE.items()}


# =============================================================================
# Helpers
# =============================================================================


def content_hash(content: str) -> str:
    """SHA-256 hex digest of plaintext content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def normalize_timestamp(ts: datetime) -> datetime:
    """UTC, truncated to millisecond precision. Naive datetimes are taken as UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    return ts.replace(microsecond=(ts.microsecond // 1000) * 1000)


def timestamp_to_ms(ts: datetime) -> int:
    return (normalize_timestamp(ts) - _EPOCH) // _ONE_MS


def ms_to_timestamp(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ms)


def utcnow() -> datetime:
    return normalize_timestamp(datetime.now(timezone.utc))


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(token: str) -> bytes:
    if not isinstance(token, str) or not _TOKEN_ALPHABET.match(token):
        raise FormatError("Token is not a base64url string")
    try:
        blob = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
    except (binascii.Error, ValueError):
        raise FormatError("Invalid base64url encoding")
    # Reject encodings whose unused trailing bits were altered
    if _b64url_encode(blob) != token:
        raise FormatError("Non-canonical base64url encoding")
    return blob


# =============================================================================
# Data Structures
# =============================================================================


@dataclass(frozen=True)
class Message:
    """
    One logical chat message.

    The timestamp is normalized to UTC milliseconds and the content hash is
    computed from the content when not given, so a Message compares equal to
    its own pack/unpack round trip.
    """

    role: MessageRole
    content: str
    sequence: int
    timestamp: datetime
    content_hash: str = ""

    def __post_init__(self):
        try:
            role = MessageRole(self.role)
        except ValueError:
            raise ValidationError(f"Invalid role: {self.role!r}")
        if not isinstance(self.content, str):
            raise ValidationError("Content must be a string")
        if isinstance(self.sequence, bool) or not isinstance(self.sequence, int):
            raise ValidationError("Sequence must be an integer")
        if not 0 <= self.sequence <= MAX_SEQUENCE:
            raise ValidationError(f"Invalid sequence: {self.sequence}. Must be 0-{MAX_SEQUENCE}.")

        object.__setattr__(self, "role", role)
        object.__setattr__(self, "timestamp", normalize_timestamp(self.timestamp))
        if not self.content_hash:
            object.__setattr__(self, "content_hash", content_hash(self.content))


@dataclass(frozen=True)
class TokenHeader:
    """Cleartext token header. Authenticated, not encrypted."""

    version: int
    flags: int
    role: MessageRole
    sequence: int

    @property
    def compressed(self) -> bool:
        return bool(self.flags & FLAG_COMPRESSED)


@dataclass(frozen=True)
class TokenMetrics:
    """Size accounting for one packed token."""

    raw_bytes: int
    compressed_bytes: int
    encrypted_bytes: int

    @property
    def compression_ratio(self) -> float:
        if self.raw_bytes == 0:
            return 0.0
        return round(self.compressed_bytes / self.raw_bytes, 3)


class _TokenPayload(BaseModel):
    """Serialized form of the encrypted part of a token."""

    model_config = ConfigDict(extra="forbid", strict=True)

    content: str
    sequence: int
    timestamp: int
    content_hash: str


# =============================================================================
# Packing
# =============================================================================


def _associated_data(header: bytes, context: str) -> bytes:
    return header + context.encode("utf-8")


def pack_message_with_metrics(
    message: Message,
    encryption_key,
    context: str,
    max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH,
) -> Tuple[str, TokenMetrics]:
    """
    Pack a message into an encrypted token and report its size metrics.

    Args:
        message: Message to pack
        encryption_key: ConversationKey for the context
        context: Conversation id (bound into the associated data)
        max_content_length: Maximum content length in characters

    Returns:
        Tuple of (token, metrics)

    Raises:
        ValidationError: If the content is too long or the context is empty
    """
    if not context:
        raise ValidationError("Context must be a non-empty string")
    if len(message.content) > max_content_length:
        raise ValidationError(
            f"Content exceeds maximum size ({max_content_length} characters)",
            sequence=message.sequence,
        )

    payload = _TokenPayload(
        content=message.content,
        sequence=message.sequence,
        timestamp=timestamp_to_ms(message.timestamp),
        content_hash=message.content_hash,
    )
    raw = payload.model_dump_json().encode("utf-8")

    compressed = zlib.compress(raw, COMPRESSION_LEVEL)
    flags = 0
    body = raw
    if len(compressed) < len(raw):
        flags |= FLAG_COMPRESSED
        body = compressed

    header = _HEADER.pack(TOKEN_VERSION, flags, _ROLE_TO_BYTE[message.role], message.sequence)
    nonce, ciphertext, auth_tag = encrypt_aes_gcm(encryption_key, body, _associated_data(header, context))

    blob = header + nonce + ciphertext + auth_tag
    metrics = TokenMetrics(raw_bytes=len(raw), compressed_bytes=len(body), encrypted_bytes=len(blob))
    logger.debug(
        "Packed sequence %d: raw=%d compressed=%d encrypted=%d ratio=%.3f",
        message.sequence,
        metrics.raw_bytes,
        metrics.compressed_bytes,
        metrics.encrypted_bytes,
        metrics.compression_ratio,
    )
    return _b64url_encode(blob), metrics


def pack_message(
    message: Message,
    encryption_key,
    context: str,
    max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH,
) -> str:
    """Pack a message into an opaque, authenticated-encrypted token."""
    token, _ = pack_message_with_metrics(message, encryption_key, context, max_content_length)
    return token


# =============================================================================
# Unpacking
# =============================================================================


def _parse_header(blob: bytes) -> TokenHeader:
    version, flags, role_byte, sequence = _HEADER.unpack_from(blob, 0)
    if version != TOKEN_VERSION:
        raise FormatError(f"Unsupported version: {version}. Expected {TOKEN_VERSION}.")
    if flags & ~KNOWN_FLAGS:
        raise FormatError(f"Unknown flags: {flags:#04x}")
    role = _BYTE_TO_ROLE.get(role_byte)
    if role is None:
        raise FormatError(f"Invalid role byte: {role_byte}")
    return TokenHeader(version=version, flags=flags, role=role, sequence=sequence)


def _decode_frame(token: str) -> Tuple[bytes, TokenHeader]:
    blob = _b64url_decode(token)
    min_size = HEADER_SIZE + NONCE_SIZE + TAG_SIZE
    if len(blob) < min_size:
        raise FormatError(f"Token too small: {len(blob)} bytes (min {min_size})")
    return blob, _parse_header(blob)


def peek_header(token: str) -> Optional[TokenHeader]:
    """
    Read the cleartext header without decrypting.

    The header is only authenticated on decryption, so callers must not
    trust it for anything beyond locating a token.

    Returns:
        TokenHeader, or None if the token framing is invalid
    """
    try:
        _, header = _decode_frame(token)
    except FormatError:
        return None
    return header


def unpack_message(token: str, encryption_key, context: str) -> Message:
    """
    Decrypt and verify a token.

    Raises:
        FormatError: Framing is invalid (checked before decryption) or the
            decrypted payload does not parse
        DecryptionError: Authentication tag check failed (wrong key, wrong
            context, or tampered bytes)
    """
    blob, header = _decode_frame(token)

    nonce = blob[HEADER_SIZE:HEADER_SIZE + NONCE_SIZE]
    ciphertext = blob[HEADER_SIZE + NONCE_SIZE:-TAG_SIZE]
    auth_tag = blob[-TAG_SIZE:]

    try:
        body = decrypt_aes_gcm(
            encryption_key, nonce, ciphertext, auth_tag, _associated_data(blob[:HEADER_SIZE], context)
        )
    except InvalidTag:
        raise DecryptionError(
            "Decryption failed: invalid key or tampered data", sequence=header.sequence
        )

    if header.compressed:
        try:
            body = zlib.decompress(body)
        except zlib.error as e:
            raise FormatError(f"Decompression failed: {e}", sequence=header.sequence)

    try:
        payload = _TokenPayload.model_validate_json(body)
    except PydanticValidationError as e:
        raise FormatError(
            f"Malformed payload: {e.error_count()} validation error(s)", sequence=header.sequence
        )

    if payload.sequence != header.sequence:
        raise FormatError(
            f"Sequence mismatch: header {header.sequence}, payload {payload.sequence}",
            sequence=header.sequence,
        )
    if payload.content_hash != content_hash(payload.content):
        raise FormatError("Content hash mismatch", sequence=header.sequence)

    return Message(
        role=header.role,
        content=payload.content,
        sequence=payload.sequence,
        timestamp=ms_to_timestamp(payload.timestamp),
        content_hash=payload.content_hash,
    )


def decrypt_messages(
    tokens: List[str],
    encryption_key,
    context: str,
    offset: int = 0,
    limit: Optional[int] = None,
) -> List[Message]:
    """
    Decrypt a window of tokens (viewport loading).

    Failures are re-raised with the index of the offending token.
    """
    if offset < 0:
        raise ValidationError("Offset must be non-negative")
    if limit is not None and limit < 0:
        raise ValidationError("Limit must be non-negative")

    end = len(tokens) if limit is None else min(offset + limit, len(tokens))
    messages = []
    for index in range(offset, end):
        try:
            messages.append(unpack_message(tokens[index], encryption_key, context))
        except (FormatError, DecryptionError) as e:
            e.index = index
            raise
    return messages


def estimate_storage_size(tokens: List[str]) -> int:
    """Approximate row storage in bytes: token bytes + array overhead + row overhead."""
    token_bytes = sum(len(token) * 3 // 4 for token in tokens)
    return token_bytes + len(tokens) * 8 + 1024
