"""Identity bridge: turns a bearer token into a verified ``{userId, role}``.

Two verifiers are available:
1. JWTTokenVerifier: HS256 tokens signed with the shared secret from
   ``marketchat.secrets.yaml`` (python-jose).
2. RemoteTokenVerifier: POSTs the token to the identity provider's
   introspection endpoint (httpx).

``build_verifier`` picks one from config; the chat hub owns the instance.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from jose import JWTError, jwt

from marketchat.chat.errors import AuthenticationError
from marketchat.chat.schemas import Role, VerifiedIdentity
from marketchat.config import AppConfig

logger = logging.getLogger(__name__)


class TokenVerifier(ABC):
    """Abstract identity bridge."""

    @abstractmethod
    async def verify_token(self, token: str) -> VerifiedIdentity:
        """Verify a bearer token.

        Raises:
            AuthenticationError: If the token is missing, malformed, expired,
                or the identity provider rejects it.
        """


class JWTTokenVerifier(TokenVerifier):
    """Verifies locally signed JWTs.

    Expected claims: ``sub`` (user ID), ``role`` (buyer/seller/admin), ``exp``.
    """

    def __init__(self, secret_key: str, algorithm: str = "HS256", expire_minutes: int = 60):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes

    async def verify_token(self, token: str) -> VerifiedIdentity:
        if not token:
            raise AuthenticationError("Authentication required")
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
            return VerifiedIdentity(userId=payload.get("sub", ""), role=payload.get("role"))
        except (JWTError, ValueError) as e:
            # Catches any error from jose or Pydantic validation
            logger.info(f"[Auth] Token rejected: {e}")
            raise AuthenticationError("Authentication failed") from e

    def issue_token(
        self,
        user_id: str,
        role: Role,
        expires_in: Optional[timedelta] = None,
    ) -> str:
        """Sign a token for ``user_id``. Used by development tooling and tests."""
        if expires_in is None:
            expires_in = timedelta(minutes=self.expire_minutes)
        now = datetime.now(timezone.utc)
        claims = {
            "sub": user_id,
            "role": Role(role).value,
            "iat": int(now.timestamp()),
            "exp": int((now + expires_in).timestamp()),
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)


class RemoteTokenVerifier(TokenVerifier):
    """Delegates verification to an HTTP introspection endpoint.

    The endpoint receives ``{"token": ...}`` and answers
    ``{"active": true, "userId": ..., "role": ...}`` for valid tokens.
    """

    def __init__(
        self,
        introspection_url: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.introspection_url = introspection_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport

    async def verify_token(self, token: str) -> VerifiedIdentity:
        if not token:
            raise AuthenticationError("Authentication required")

        auth = (self.client_id, self.client_secret) if self.client_id else None
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.introspection_url, json={"token": token}, auth=auth)
        except httpx.HTTPError as e:
            logger.error(f"[Auth] Introspection request failed: {e}")
            raise AuthenticationError("Identity provider unavailable") from e

        if resp.status_code != 200:
            logger.info(f"[Auth] Introspection returned {resp.status_code}")
            raise AuthenticationError("Authentication failed")

        try:
            data = resp.json()
        except ValueError as e:
            logger.error(f"[Auth] Introspection returned a non-JSON body: {e}")
            raise AuthenticationError("Authentication failed") from e
        if not isinstance(data, dict):
            logger.error("[Auth] Introspection returned an unexpected payload")
            raise AuthenticationError("Authentication failed")

        if not data.get("active", False):
            raise AuthenticationError("Token is no longer active")
        try:
            return VerifiedIdentity(
                userId=data.get("userId") or data.get("sub", ""),
                role=data.get("role"),
            )
        except ValueError as e:
            raise AuthenticationError("Authentication failed") from e


def build_verifier(config: AppConfig) -> TokenVerifier:
    """Create the verifier selected by ``auth.provider``."""
    if config.auth.provider == "remote":
        if not config.auth.introspection_url:
            raise ValueError("auth.introspection_url is required for the remote provider")
        return RemoteTokenVerifier(
            introspection_url=config.auth.introspection_url,
            client_id=config.secrets.introspection.client_id,
            client_secret=config.secrets.introspection.client_secret,
            timeout=config.auth.request_timeout,
        )
    return JWTTokenVerifier(
        secret_key=config.secrets.jwt.secret_key,
        algorithm=config.secrets.jwt.algorithm,
        expire_minutes=config.auth.token_expire_minutes,
    )

