"""Identity resolution for socket and REST callers.

The chat core only needs ``verify(token) -> Identity``; it never sees how the
credential was issued. ``JWTIdentityProvider`` verifies the HS256 bearer
tokens issued by the account service.

Usage:
    provider = JWTIdentityProvider(secret_key="...")
    identity = await provider.verify(token)
"""
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

import jwt
from pydantic import BaseModel, ConfigDict

from app.chat.errors import AuthError

logger = logging.getLogger(__name__)

# Claim names tried in order; tokens from different login flows use different keys.
USER_ID_CLAIMS = ("id", "userId", "_id", "sub")
DISPLAY_NAME_CLAIMS = ("username", "name", "email")


class Identity(BaseModel):
    """Authenticated caller, immutable for the lifetime of a connection.

    Attributes:
        userId: Stable user identifier.
        displayName: Name shown to other room members.
        isAnonymous: True for guest identities created without a credential.
    """
    model_config = ConfigDict(frozen=True)

    userId: str
    displayName: str
    isAnonymous: bool = False


class IdentityProvider(ABC):
    """Validates a bearer credential and returns the caller's identity."""

    @abstractmethod
    async def verify(self, token: Optional[str]) -> Identity:
        """Return the identity bound to ``token``.

        Raises:
            AuthError: If the token is missing, malformed, expired or invalid.
        """


class JWTIdentityProvider(IdentityProvider):
    """Verifies JWT bearer tokens signed with a shared secret."""

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm

    async def verify(self, token: Optional[str]) -> Identity:
        if not token:
            raise AuthError("No token provided")

        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthError("Token expired")
        except jwt.InvalidTokenError as e:
            logger.debug(f"[Auth] Rejected token: {e}")
            raise AuthError("Invalid token")

        user_id = _first_claim(claims, USER_ID_CLAIMS)
        if not user_id:
            raise AuthError("Token carries no user id")

        return Identity(
            userId=user_id,
            displayName=_first_claim(claims, DISPLAY_NAME_CLAIMS) or "Unknown",
        )

    def create_token(
        self,
        user_id: str,
        username: Optional[str] = None,
        expires_in: int = 3600,
    ) -> str:
        """Issue a signed token for ``user_id`` (local tooling and tests)."""
        now = int(time.time())
        payload = {"id": user_id, "iat": now, "exp": now + expires_in}
        if username:
            payload["username"] = username
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)


def _first_claim(claims: dict, names) -> Optional[str]:
    for name in names:
        value = claims.get(name)
        if value not in (None, ""):
            return str(value)
    return None
