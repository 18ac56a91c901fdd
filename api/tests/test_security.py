"""Tests for session token issuing and verification.

Covers:
- Round trip of issued claims
- Tampered, foreign-secret, expired and alg=none tokens are rejected
- Empty signing secret is refused
"""

from __future__ import annotations

import time

import jwt
import pytest
from pydantic import SecretStr

from api.security import GlobalRole, InvalidSessionToken, SessionTokenManager, TokenConfig


@pytest.fixture()
def manager() -> SessionTokenManager:
    return SessionTokenManager(TokenConfig(secret=SecretStr("unit-test-secret"), leeway_seconds=0))


class TestSessionTokens:
    def test_issue_and_validate(self, manager: SessionTokenManager) -> None:
        token = manager.issue("user-1", email="a@b.test", tenant_slug="demo")
        claims = manager.validate(token)

        assert claims.sub == "user-1"
        assert claims.email == "a@b.test"
        assert claims.tenant_slug == "demo"
        assert claims.global_role is GlobalRole.USER
        assert claims.is_super_admin is False

    def test_super_admin_claim(self, manager: SessionTokenManager) -> None:
        claims = manager.validate(manager.issue("root", global_role="SUPER_ADMIN"))
        assert claims.is_super_admin is True
        assert claims.tenant_slug is None

    def test_tampered_token_rejected(self, manager: SessionTokenManager) -> None:
        token = manager.issue("user-1")
        header, payload, signature = token.split(".")
        with pytest.raises(InvalidSessionToken):
            manager.validate(f"{header}.{payload}.{signature[::-1]}")

    def test_foreign_secret_rejected(self, manager: SessionTokenManager) -> None:
        other = SessionTokenManager(TokenConfig(secret=SecretStr("another-secret")))
        with pytest.raises(InvalidSessionToken, match="Invalid session token"):
            manager.validate(other.issue("user-1"))

    def test_expired_token_rejected(self, manager: SessionTokenManager) -> None:
        now = int(time.time())
        token = jwt.encode(
            {"sub": "user-1", "iat": now - 120, "exp": now - 60, "iss": "carwash"},
            "unit-test-secret",
            algorithm="HS256",
        )
        with pytest.raises(InvalidSessionToken, match="expired"):
            manager.validate(token)

    def test_unsigned_token_rejected(self, manager: SessionTokenManager) -> None:
        now = int(time.time())
        token = jwt.encode({"sub": "user-1", "iat": now, "exp": now + 60, "iss": "carwash"}, None, algorithm="none")
        with pytest.raises(InvalidSessionToken):
            manager.validate(token)

    def test_wrong_issuer_rejected(self, manager: SessionTokenManager) -> None:
        now = int(time.time())
        token = jwt.encode(
            {"sub": "user-1", "iat": now, "exp": now + 60, "iss": "someone-else"},
            "unit-test-secret",
            algorithm="HS256",
        )
        with pytest.raises(InvalidSessionToken):
            manager.validate(token)

    def test_garbage_rejected(self, manager: SessionTokenManager) -> None:
        with pytest.raises(InvalidSessionToken):
            manager.validate("not-a-jwt")

    def test_empty_secret_refused(self) -> None:
        with pytest.raises(ValueError, match="must not be empty"):
            SessionTokenManager(TokenConfig(secret=SecretStr("")))
