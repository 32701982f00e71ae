"""Pydantic schemas for conversation results."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from core.crypto.codec import Message, MessageRole


class MessageView(BaseModel):
    """One decrypted message."""

    role: MessageRole
    content: str
    sequence: int
    timestamp: datetime
    content_hash: str

    @classmethod
    def from_message(cls, message: Message) -> "MessageView":
        return cls(
            role=message.role,
            content=message.content,
            sequence=message.sequence,
            timestamp=message.timestamp,
            content_hash=message.content_hash,
        )


class ConversationSummary(BaseModel):
    """Conversation metadata without message content."""

    id: str
    title: str
    model: Optional[str] = None
    message_count: int
    merkle_root: Optional[str] = None
    storage_bytes: int = 0
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ConversationListResponse(BaseModel):
    """Page of conversation summaries."""

    conversations: List[ConversationSummary]
    total: int


class ConversationView(BaseModel):
    """Conversation with a decrypted window of messages."""

    conversation: ConversationSummary
    messages: List[MessageView]
    offset: int = 0
    limit: int
    has_more: bool = False
    root_verified: bool = Field(
        ...,
        description="Whether the stored chain root matches the full token sequence",
    )


class AppendResult(BaseModel):
    """Result of appending messages."""

    conversation_id: str
    messages: List[MessageView]
    message_count: int
    merkle_root: str
    storage_bytes: int


class EditResult(BaseModel):
    """Result of a destructive edit."""

    conversation_id: str
    edited_sequence: int
    message: MessageView
    deleted_count: int = Field(..., description="Messages removed after the edited one")
    space_reclaimed: int = Field(..., description="Approximate bytes freed")
    message_count: int
    merkle_root: str
    needs_regeneration_from: Optional[int] = None


class DeleteResult(BaseModel):
    """Result of a destructive delete."""

    conversation_id: str
    deleted_sequence: int
    deleted_count: int = Field(..., description="Messages removed, including the target")
    space_reclaimed: int = Field(..., description="Approximate bytes freed")
    message_count: int
    merkle_root: str


class IntegrityReport(BaseModel):
    """Full verification outcome for a token sequence."""

    valid: bool
    root_matches: bool
    computed_root: str
    token_count: int
    errors: List[str] = Field(default_factory=list)
    last_valid_sequence: Optional[int] = None
    failed_index: Optional[int] = None

    @classmethod
    def from_report(cls, report) -> "IntegrityReport":
        return cls(
            valid=report.valid,
            root_matches=report.root_matches,
            computed_root=report.computed_root,
            token_count=report.token_count,
            errors=list(report.errors),
            last_valid_sequence=report.last_valid_sequence,
            failed_index=report.failed_index,
        )
