"""Pydantic schemas for context-scoped vault results."""

from typing import List

from pydantic import BaseModel, Field

from schemas.conversation import MessageView


class VaultMetadata(BaseModel):
    """Size accounting for an encrypted batch."""

    item_count: int
    original_bytes: int
    encrypted_bytes: int
    compression_ratio: float = Field(..., description="encrypted_bytes / original_bytes, 0 when empty")


class VaultEncryptResult(BaseModel):
    """Tokens and chain root for an encrypted batch."""

    context: str
    tokens: List[str]
    merkle_root: str
    metadata: VaultMetadata


class VaultDecryptResult(BaseModel):
    """Decrypted batch, in token order."""

    context: str
    data: List[MessageView]
