"""Test factories for creating model instances."""

from .conversation_factory import ConversationFactory
from .message_factory import AssistantMessageFactory, MessageFactory
from .user_factory import UserFactory

__all__ = ["AssistantMessageFactory", "ConversationFactory", "MessageFactory", "UserFactory"]
