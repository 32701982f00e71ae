import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from core.crypto.key_derivation import derive_master_secret
from core.crypto.primitives import SecretBytes
from core.errors import AuthenticationError, InternalError
from models.user import User

logger = logging.getLogger(__name__)

AUTH_METHOD_SESSION = "session"
AUTH_METHOD_API_KEY = "api_key"
AUTH_METHODS = (AUTH_METHOD_SESSION, AUTH_METHOD_API_KEY)


@dataclass
class AuthContext:
    """Authenticated identity plus the key material derived for it.

    Identity verification (passwords, sessions, API keys) happens upstream;
    this only carries its outcome. The master secret is re-derived per
    request and wiped when the context is closed.
    """

    user_id: str
    master_secret: SecretBytes
    user_salt: bytes
    auth_method: str = AUTH_METHOD_SESSION

    @property
    def is_api_key(self) -> bool:
        return self.auth_method == AUTH_METHOD_API_KEY

    def wipe(self) -> None:
        self.master_secret.wipe()

    def __enter__(self) -> "AuthContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()


def _decode_salt(salt) -> bytes:
    if isinstance(salt, (bytes, bytearray)):
        return bytes(salt)
    try:
        return base64.b64decode(salt, validate=True)
    except (binascii.Error, ValueError):
        raise AuthenticationError("Stored master key salt is not valid base64")


def resolve_auth_context(
    user_id: Optional[str],
    user_salt,
    settings,
    auth_method: str = AUTH_METHOD_SESSION,
) -> AuthContext:
    """Build an AuthContext for an already-authenticated identity.

    Session and API-key requests both land here, so the same user always
    gets the same master secret.

    Args:
        user_id: Authenticated user id
        user_salt: Raw salt bytes or its base64 form as stored on the user row
        settings: Settings carrying the server secret and iteration count
        auth_method: "session" or "api_key"

    Raises:
        AuthenticationError: If the identity or salt is missing, or the method is unknown
    """
    if not user_id:
        raise AuthenticationError("Missing user identity")
    if auth_method not in AUTH_METHODS:
        raise AuthenticationError(f"Unknown auth method: {auth_method}")
    if not user_salt:
        raise AuthenticationError(f"User {user_id} has no master key salt")

    salt = _decode_salt(user_salt)
    master_secret = derive_master_secret(
        settings.server_secret,
        salt,
        iterations=settings.MASTER_KEY_ITERATIONS,
    )
    return AuthContext(
        user_id=user_id,
        master_secret=master_secret,
        user_salt=salt,
        auth_method=auth_method,
    )


async def load_auth_context(
    session,
    user_id: str,
    settings,
    auth_method: str = AUTH_METHOD_SESSION,
) -> AuthContext:
    """Look up the user row and resolve its AuthContext.

    A user created before salts existed gets one on first use; an existing
    salt is never replaced.
    """
    try:
        result = await session.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if user is None:
            raise AuthenticationError(f"Unknown user: {user_id}")
        if not user.has_master_key_salt:
            user.ensure_master_key_salt()
            await session.commit()
            logger.info("Generated master key salt for user %s", user_id)
    except SQLAlchemyError as e:
        logger.error("Failed to load user %s: %s", user_id, e)
        raise InternalError("Failed to load user") from e

    return resolve_auth_context(user.id, user.salt_bytes, settings, auth_method)
