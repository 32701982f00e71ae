"""Pydantic schemas for service results."""

from .conversation import (
    MessageView,
    ConversationSummary,
    ConversationListResponse,
    ConversationView,
    AppendResult,
    EditResult,
    DeleteResult,
    IntegrityReport,
)
from .vault import (
    VaultMetadata,
    VaultEncryptResult,
    VaultDecryptResult,
)

__all__ = [
    "MessageView",
    "ConversationSummary",
    "ConversationListResponse",
    "ConversationView",
    "AppendResult",
    "EditResult",
    "DeleteResult",
    "IntegrityReport",
    "VaultMetadata",
    "VaultEncryptResult",
    "VaultDecryptResult",
]
