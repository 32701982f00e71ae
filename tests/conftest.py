"""
Shared test fixtures for SCCA core tests.

No database is required: services run against InMemoryConversationStore and
the SQL store is exercised with a mocked AsyncSession.
"""
import base64
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.auth import AuthContext, resolve_auth_context
from core.config import Settings
from core.crypto.key_derivation import conversation_keys
from core.services.background import BackgroundDispatcher
from core.services.conversation_store import InMemoryConversationStore

TEST_SERVER_SECRET = base64.b64encode(bytes(range(32))).decode("ascii")
TEST_USER_ID = "user_test_123"
TEST_USER_SALT = b"\x07" * 16


@pytest.fixture
def test_settings() -> Settings:
    """Settings with a fixed server secret and a cheap PBKDF2 round count."""
    return Settings(
        MASTER_KEY_SECRET=TEST_SERVER_SECRET,
        MASTER_KEY_ITERATIONS=1000,
        STORE_MODE="memory",
        SEQUENCE_BASELINE=1,
    )


@pytest.fixture
def auth_context(test_settings) -> AuthContext:
    """Resolved auth context for the default test user."""
    ctx = resolve_auth_context(TEST_USER_ID, TEST_USER_SALT, test_settings)
    yield ctx
    ctx.wipe()


@pytest.fixture
def other_auth_context(test_settings) -> AuthContext:
    """Auth context for a second user with a different salt."""
    ctx = resolve_auth_context("user_other_456", b"\x09" * 16, test_settings)
    yield ctx
    ctx.wipe()


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
async def dispatcher():
    """Background dispatcher drained at teardown so no task outlives the test."""
    d = BackgroundDispatcher()
    yield d
    await d.drain()


@pytest.fixture
def keys_for(auth_context):
    """Derive ConversationKeys for a context; all derived keys are wiped at teardown."""
    managers = []

    def _keys_for(context: str):
        cm = conversation_keys(auth_context.master_secret, context)
        managers.append(cm)
        return cm.__enter__()

    yield _keys_for

    for cm in managers:
        cm.__exit__(None, None, None)


@pytest.fixture
def mock_db():
    """Create a mock database session usable as `async with session.begin()`."""
    db = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.execute = AsyncMock()
    db.add = MagicMock()

    @asynccontextmanager
    async def _begin():
        yield db

    db.begin = MagicMock(side_effect=_begin)
    return db


@pytest.fixture
def mock_session_factory(mock_db):
    """Session factory whose sessions are all `mock_db`."""

    @asynccontextmanager
    async def _session():
        yield mock_db

    return MagicMock(side_effect=_session)
