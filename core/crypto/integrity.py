"""
Keyed hash chain over an ordered token sequence.

    acc_0 = HMAC(ik, CHAIN_SEED)
    acc_i = HMAC(ik, acc_{i-1} || uint64be(i) || token_i)
    root  = acc_n

Each step binds the previous accumulator, the token's position and its exact
bytes, so inserting, dropping, reordering or flipping a bit in any token
changes every later accumulator and the root. Verification replays the whole
sequence; there is no logarithmic proof path.
"""
import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from core.constants import CHAIN_SEED
from core.crypto.codec import unpack_message
from core.crypto.primitives import hmac_sha256, secure_compare
from core.errors import DecryptionError, FormatError

logger = logging.getLogger(__name__)

_INDEX = struct.Struct(">Q")


@dataclass(frozen=True)
class IntegrityReport:
    """
    Result of full conversation verification.

    Attributes:
        valid: Root matched and every token decrypted in gap-free order
        errors: Human-readable failures, each naming the index/sequence
        last_valid_sequence: Last sequence verified before the first failure
            (the final sequence when fully valid, None if nothing verified)
        computed_root: Root recomputed from the tokens
        root_matches: Whether computed_root equals the expected root
        failed_index: Index of the token where processing stopped, if any
    """

    valid: bool
    computed_root: str
    root_matches: bool
    errors: List[str] = field(default_factory=list)
    last_valid_sequence: Optional[int] = None
    failed_index: Optional[int] = None
    token_count: int = 0


def compute_root(tokens: Sequence[str], integrity_key) -> str:
    """
    Fold an ordered token list into a single hex digest.

    Tokens are chained as their exact ASCII bytes, so two encodings of the
    same ciphertext produce different roots.
    """
    acc = hmac_sha256(integrity_key, CHAIN_SEED)
    for index, token in enumerate(tokens):
        acc = hmac_sha256(integrity_key, acc + _INDEX.pack(index) + token.encode("utf-8"))
    return acc.hex()


def verify_root(tokens: Sequence[str], expected_root: Optional[str], integrity_key) -> bool:
    """Constant-time comparison of a stored root against one recomputed from tokens."""
    if not expected_root:
        return False
    computed = compute_root(tokens, integrity_key)
    return secure_compare(computed.encode("ascii"), expected_root.encode("ascii", "replace"))


def verify_integrity(
    tokens: Sequence[str],
    expected_root: Optional[str],
    encryption_key,
    integrity_key,
    context: str,
    baseline: int = 1,
) -> IntegrityReport:
    """
    Verify the chain root and the decrypted sequence continuity.

    Every token is decrypted in order and must carry sequence
    baseline, baseline + 1, ... with no gaps. Processing stops at the first
    token that fails decryption, parsing or continuity.

    Args:
        tokens: Ordered token list
        expected_root: Previously recorded root
        encryption_key: ConversationKey for the context
        integrity_key: IntegrityKey for the context
        context: Conversation id used when the tokens were packed
        baseline: Sequence number of the first token

    Returns:
        IntegrityReport
    """
    errors: List[str] = []

    computed_root = compute_root(tokens, integrity_key)
    root_matches = bool(expected_root) and secure_compare(
        computed_root.encode("ascii"), expected_root.encode("ascii", "replace")
    )
    if not root_matches:
        errors.append(
            f"Chain root mismatch: computed {computed_root[:16]}..., "
            f"expected {(expected_root or '')[:16]}..."
        )

    last_valid_sequence: Optional[int] = None
    failed_index: Optional[int] = None
    expected_sequence = baseline

    for index, token in enumerate(tokens):
        try:
            message = unpack_message(token, encryption_key, context)
        except (FormatError, DecryptionError) as e:
            errors.append(f"Token at index {index}: {e}")
            failed_index = index
            break

        if message.sequence != expected_sequence:
            errors.append(
                f"Sequence discontinuity at index {index}: "
                f"expected {expected_sequence}, got {message.sequence}"
            )
            failed_index = index
            break

        last_valid_sequence = message.sequence
        expected_sequence += 1

    valid = root_matches and failed_index is None
    if not valid:
        logger.warning(
            "Integrity check failed for context %s: %d error(s), stopped at index %s",
            context, len(errors), failed_index,
        )

    return IntegrityReport(
        valid=valid,
        computed_root=computed_root,
        root_matches=root_matches,
        errors=errors,
        last_valid_sequence=last_valid_sequence,
        failed_index=failed_index,
        token_count=len(tokens),
    )
