"""Tests for the identity bridge (local JWT and remote introspection)."""
from datetime import timedelta

import httpx
import pytest
from jose import jwt

from marketchat.auth.service import (
    JWTTokenVerifier,
    RemoteTokenVerifier,
    build_verifier,
)
from marketchat.chat.errors import AuthenticationError
from marketchat.chat.schemas import Role
from marketchat.config import AppConfig, AuthSettings


class TestJWTTokenVerifier:
    """Tests for locally signed tokens."""

    @pytest.mark.asyncio
    async def test_valid_token(self, verifier):
        token = verifier.issue_token("seller-7", Role.SELLER)
        identity = await verifier.verify_token(token)
        assert identity.userId == "seller-7"
        assert identity.role == Role.SELLER

    @pytest.mark.asyncio
    async def test_expired_token_rejected(self, verifier):
        token = verifier.issue_token("buyer-1", Role.BUYER, expires_in=timedelta(seconds=-10))
        with pytest.raises(AuthenticationError):
            await verifier.verify_token(token)

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, verifier):
        other = JWTTokenVerifier(secret_key="another-secret")
        token = other.issue_token("buyer-1", Role.BUYER)
        with pytest.raises(AuthenticationError):
            await verifier.verify_token(token)

    @pytest.mark.asyncio
    async def test_unknown_role_rejected(self, verifier):
        token = jwt.encode({"sub": "u1", "role": "superuser"}, "test-secret", algorithm="HS256")
        with pytest.raises(AuthenticationError):
            await verifier.verify_token(token)

    @pytest.mark.asyncio
    async def test_missing_subject_rejected(self, verifier):
        token = jwt.encode({"role": "buyer"}, "test-secret", algorithm="HS256")
        with pytest.raises(AuthenticationError):
            await verifier.verify_token(token)

    @pytest.mark.asyncio
    async def test_garbage_token_rejected(self, verifier):
        with pytest.raises(AuthenticationError):
            await verifier.verify_token("not-a-jwt")

    @pytest.mark.asyncio
    async def test_empty_token_rejected(self, verifier):
        with pytest.raises(AuthenticationError, match="required"):
            await verifier.verify_token("")

    def test_issued_token_claims(self, verifier):
        token = verifier.issue_token("admin-1", Role.ADMIN)
        claims = jwt.decode(token, "test-secret", algorithms=["HS256"])
        assert claims["sub"] == "admin-1"
        assert claims["role"] == "admin"
        assert claims["exp"] > claims["iat"]


def _remote(handler) -> RemoteTokenVerifier:
    return RemoteTokenVerifier(
        introspection_url="https://idp.example.com/introspect",
        client_id="chat",
        client_secret="s3cret",
        transport=httpx.MockTransport(handler),
    )


class TestRemoteTokenVerifier:
    """Tests for the introspection-endpoint verifier."""

    @pytest.mark.asyncio
    async def test_active_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = request.content
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"active": True, "userId": "buyer-9", "role": "buyer"})

        identity = await _remote(handler).verify_token("tok-123")
        assert identity.userId == "buyer-9"
        assert identity.role == Role.BUYER
        assert b"tok-123" in seen["body"]
        assert seen["auth"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_sub_claim_fallback(self):
        def handler(request):
            return httpx.Response(200, json={"active": True, "sub": "seller-2", "role": "seller"})

        identity = await _remote(handler).verify_token("tok")
        assert identity.userId == "seller-2"

    @pytest.mark.asyncio
    async def test_inactive_token(self):
        def handler(request):
            return httpx.Response(200, json={"active": False})

        with pytest.raises(AuthenticationError, match="no longer active"):
            await _remote(handler).verify_token("tok")

    @pytest.mark.asyncio
    async def test_non_200_rejected(self):
        def handler(request):
            return httpx.Response(401, json={"error": "invalid_token"})

        with pytest.raises(AuthenticationError):
            await _remote(handler).verify_token("tok")

    @pytest.mark.asyncio
    async def test_provider_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(AuthenticationError, match="unavailable"):
            await _remote(handler).verify_token("tok")

    @pytest.mark.asyncio
    async def test_non_json_body_rejected(self):
        def handler(request):
            return httpx.Response(200, text="<html>gateway</html>")

        with pytest.raises(AuthenticationError):
            await _remote(handler).verify_token("tok")

    @pytest.mark.asyncio
    async def test_non_object_body_rejected(self):
        def handler(request):
            return httpx.Response(200, json=[{"active": True}])

        with pytest.raises(AuthenticationError):
            await _remote(handler).verify_token("tok")

    @pytest.mark.asyncio
    async def test_invalid_role_rejected(self):
        def handler(request):
            return httpx.Response(200, json={"active": True, "userId": "x", "role": "guest"})

        with pytest.raises(AuthenticationError):
            await _remote(handler).verify_token("tok")


class TestBuildVerifier:
    """Tests for verifier selection from config."""

    def test_jwt_is_default(self):
        assert isinstance(build_verifier(AppConfig()), JWTTokenVerifier)

    def test_remote_provider(self):
        config = AppConfig(auth=AuthSettings(provider="remote", introspection_url="https://idp/x"))
        verifier = build_verifier(config)
        assert isinstance(verifier, RemoteTokenVerifier)
        assert verifier.introspection_url == "https://idp/x"

    def test_remote_provider_requires_url(self):
        with pytest.raises(ValueError, match="introspection_url"):
            build_verifier(AppConfig(auth=AuthSettings(provider="remote")))

    def test_token_lifetime_from_config(self):
        verifier = build_verifier(AppConfig(auth=AuthSettings(token_expire_minutes=5)))
        token = verifier.issue_token("buyer-1", Role.BUYER)
        claims = jwt.decode(token, verifier.secret_key, algorithms=["HS256"])
        assert claims["exp"] - claims["iat"] == 300
