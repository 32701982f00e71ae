"""
Application-wide constants.

Derivation labels and token framing values are part of the persisted format:
changing any of them makes every stored token undecryptable.
"""

# System actor ID used for audit logs when an action is performed by the
# system (e.g. the generation collaborator appending a response).
SYSTEM_ACTOR_ID = "__system__"

# =============================================================================
# Key derivation labels (domain separation)
# =============================================================================

MASTER_SECRET_LABEL = b"scca-user-master-key-v1"
USER_KEY_SALT = b"scca-v1-user-key-extract"
USER_KEY_INFO = b"user-key-aes256gcm"
CONVERSATION_KEY_SALT = b"scca-v1-conv-key-extract"
INTEGRITY_KEY_SALT = b"scca-v1-integrity-extract"

# =============================================================================
# Token framing
# =============================================================================

TOKEN_VERSION = 1
HEADER_SIZE = 7  # version(1) + flags(1) + role(1) + sequence(4)
NONCE_SIZE = 16
TAG_SIZE = 16
MAX_SEQUENCE = 0xFFFFFFFF

FLAG_COMPRESSED = 0x01
KNOWN_FLAGS = FLAG_COMPRESSED

COMPRESSION_LEVEL = 9

# =============================================================================
# Integrity chain
# =============================================================================

CHAIN_SEED = b"scca-v1-chain-seed"

# Vault batches are numbered from 0 and keyed under their own namespace so a
# vault context can never collide with a conversation id.
VAULT_SEQUENCE_BASELINE = 0
VAULT_CONTEXT_PREFIX = "vault:"
