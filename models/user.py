"""
User model with master key salt storage.

Security Note:
- Only the per-user salt is stored
- The user's MasterSecret is re-derived from the server secret + salt on
  every request and is NEVER persisted
"""

import base64
from datetime import datetime

from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import relationship

from core.crypto.key_derivation import generate_user_salt

from .base import Base


class User(Base):
    """
    User identity as seen by the conversation store.

    Registration, password hashing and sessions live in the auth
    collaborator; this table only carries what key derivation needs.
    """

    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True, unique=True, index=True)

    # Base64-encoded 16-byte salt for MasterSecret derivation
    master_key_salt = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    conversations = relationship("Conversation", back_populates="user", cascade="all, delete-orphan")

    @property
    def has_master_key_salt(self) -> bool:
        return bool(self.master_key_salt)

    @property
    def salt_bytes(self) -> bytes:
        """Decoded master key salt."""
        if not self.master_key_salt:
            raise ValueError(f"User {self.id} has no master key salt")
        return base64.b64decode(self.master_key_salt)

    def ensure_master_key_salt(self) -> str:
        """
        Generate a salt if the user has none yet.

        Never replaces an existing salt: doing so would make every stored
        conversation undecryptable.
        """
        if not self.master_key_salt:
            self.master_key_salt = base64.b64encode(generate_user_salt()).decode("ascii")
        return self.master_key_salt
