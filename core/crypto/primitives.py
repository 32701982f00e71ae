"""
Cryptographic primitives for the SCCA conversation store.

Security Properties:
- All randomness from secrets module (CSPRNG)
- PBKDF2-HMAC-SHA512 for master secret derivation
- HKDF-SHA256 with fixed labels for the key hierarchy
- AES-256-GCM for authenticated encryption
- HMAC-SHA256 for the integrity chain

Key material handed around the core lives in SecretBytes buffers so it can be
zeroed as soon as the caller is done with it. Python may still hold transient
immutable copies (the cryptography backends require bytes), so wiping is best
effort, not a guarantee.
"""

from typing import Optional, Tuple
import hashlib
import hmac
import secrets

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.constants import NONCE_SIZE, TAG_SIZE

KEY_SIZE = 32


# =============================================================================
# Key Material
# =============================================================================


class SecretBytes:
    """
    Wipeable container for key material.

    Use as a context manager so the buffer is zeroed on every exit path:

        >>> with SecretBytes(b"\\x01" * 32) as key:
        ...     len(key)
        32
    """

    __slots__ = ("_buf", "_wiped")

    def __init__(self, data: bytes):
        self._buf = bytearray(data)
        self._wiped = False

    def reveal(self) -> bytes:
        """Return the key bytes. Raises ValueError once wiped."""
        if self._wiped:
            raise ValueError("Key material has been wiped")
        return bytes(self._buf)

    def wipe(self) -> None:
        """Overwrite the buffer with zeros."""
        for i in range(len(self._buf)):
            self._buf[i] = 0
        self._wiped = True

    @property
    def wiped(self) -> bool:
        return self._wiped

    def __len__(self) -> int:
        return len(self._buf)

    def __enter__(self) -> "SecretBytes":
        return self

    def __exit__(self, *_) -> None:
        self.wipe()

    def __repr__(self) -> str:
        state = "wiped" if self._wiped else f"{len(self._buf)} bytes"
        return f"SecretBytes(<{state}>)"


def _raw(key) -> bytes:
    if isinstance(key, SecretBytes):
        return key.reveal()
    return bytes(key)


# =============================================================================
# Randomness
# =============================================================================


def generate_salt(length: int = 16) -> bytes:
    """
    Generate cryptographically secure random bytes.

    Args:
        length: Number of bytes to generate (default: 16)

    Returns:
        Random bytes of specified length
    """
    return secrets.token_bytes(length)


# =============================================================================
# Key Derivation
# =============================================================================


def pbkdf2_sha512(secret: bytes, salt: bytes, iterations: int, length: int = KEY_SIZE) -> bytes:
    """Stretch a secret with PBKDF2-HMAC-SHA512."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=length,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret)


def hkdf_sha256(key_material, salt: bytes, info: bytes, length: int = KEY_SIZE) -> bytes:
    """
    Derive a key with HKDF-SHA256.

    The salt and info labels provide domain separation: the same input key
    material with different labels yields computationally independent keys.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info,
    )
    return hkdf.derive(_raw(key_material))


def sha256_digest(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hmac_sha256(key, data: bytes) -> bytes:
    """Keyed HMAC-SHA256 of data."""
    return hmac.new(_raw(key), data, hashlib.sha256).digest()


# =============================================================================
# Symmetric Encryption (AES-256-GCM)
# =============================================================================


def encrypt_aes_gcm(
    key,
    plaintext: bytes,
    associated_data: Optional[bytes] = None,
) -> Tuple[bytes, bytes, bytes]:
    """
    Encrypt data using AES-256-GCM.

    A random 16-byte nonce is generated for each encryption.

    Args:
        key: 32-byte encryption key (bytes or SecretBytes)
        plaintext: Data to encrypt
        associated_data: Optional additional authenticated data (AAD).
                        AAD is authenticated but not encrypted.

    Returns:
        Tuple of (nonce, ciphertext, auth_tag)

    Raises:
        ValueError: If key is not 32 bytes
    """
    raw_key = _raw(key)
    if len(raw_key) != KEY_SIZE:
        raise ValueError("Key must be 32 bytes")

    nonce = secrets.token_bytes(NONCE_SIZE)
    aesgcm = AESGCM(raw_key)

    # AESGCM.encrypt returns ciphertext + tag concatenated
    ciphertext_with_tag = aesgcm.encrypt(nonce, plaintext, associated_data)

    return nonce, ciphertext_with_tag[:-TAG_SIZE], ciphertext_with_tag[-TAG_SIZE:]


def decrypt_aes_gcm(
    key,
    nonce: bytes,
    ciphertext: bytes,
    auth_tag: bytes,
    associated_data: Optional[bytes] = None,
) -> bytes:
    """
    Decrypt data using AES-256-GCM.

    Verifies the authentication tag before returning plaintext.

    Raises:
        ValueError: If key/nonce/tag are wrong length
        cryptography.exceptions.InvalidTag: If authentication fails
            (ciphertext was tampered with or wrong key/AAD)
    """
    raw_key = _raw(key)
    if len(raw_key) != KEY_SIZE:
        raise ValueError("Key must be 32 bytes")
    if len(nonce) != NONCE_SIZE:
        raise ValueError("Nonce must be 16 bytes")
    if len(auth_tag) != TAG_SIZE:
        raise ValueError("Auth tag must be 16 bytes")

    aesgcm = AESGCM(raw_key)
    return aesgcm.decrypt(nonce, ciphertext + auth_tag, associated_data)


# =============================================================================
# Utilities
# =============================================================================


def secure_compare(a: bytes, b: bytes) -> bool:
    """
    Compare two byte strings in constant time.

    Prevents timing attacks when comparing secrets (like chain roots).
    """
    return hmac.compare_digest(a, b)
