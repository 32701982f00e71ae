"""Conversation services: persistence, mutation protocol and vault."""

from .audit_service import AuditService
from .background import BackgroundDispatcher, RegenerationHandler, RegenerationRequest
from .conversation_service import ConversationService
from .conversation_store import (
    ConversationSnapshot,
    ConversationStore,
    ConversationTransaction,
    InMemoryConversationStore,
    build_conversation_store,
)
from .mutation_service import MutationService
from .sql_conversation_store import SQLConversationStore
from .vault_service import VaultService

__all__ = [
    "AuditService",
    "BackgroundDispatcher",
    "RegenerationHandler",
    "RegenerationRequest",
    "ConversationService",
    "ConversationSnapshot",
    "ConversationStore",
    "ConversationTransaction",
    "InMemoryConversationStore",
    "build_conversation_store",
    "MutationService",
    "SQLConversationStore",
    "VaultService",
]
