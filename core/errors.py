"""
Error kinds shared by the crypto core and the conversation services.

Every failure raised by the codec, the integrity chain or the mutation
protocol is an SCCAError subclass so callers can map the kind to a response
(unauthorized, client error, tampering, not found, conflict, internal)
without inspecting messages.
"""
from typing import Optional


class SCCAError(Exception):
    """Base exception for SCCA errors."""

    def __init__(
        self,
        message: str,
        index: Optional[int] = None,
        sequence: Optional[int] = None,
    ):
        super().__init__(message)
        self.index = index
        self.sequence = sequence


class AuthenticationError(SCCAError):
    """Caller lacks a valid identity or key material."""
    pass


class ValidationError(SCCAError):
    """Malformed input: bad context, empty or oversized batch, bad sequence."""
    pass


class FormatError(SCCAError):
    """Token framing or decrypted payload does not parse."""
    pass


class DecryptionError(SCCAError):
    """Authentication tag mismatch (wrong key, wrong context or tampered bytes)."""
    pass


class IntegrityError(SCCAError):
    """Chain root mismatch or broken sequence continuity."""
    pass


class NotFoundError(SCCAError):
    """Target conversation or sequence does not exist."""
    pass


class ConflictError(SCCAError):
    """Write lost a race or the target is already in a terminal state."""
    pass


class InternalError(SCCAError):
    """Persistence or unexpected failure. Prior state is intact."""
    pass
