from __future__ import annotations

import jwt
import pytest

from multamind.auth import AuthError, TokenVerifier, issue_token

from conftest import JWT_SECRET


def test_valid_token_yields_identity():
    verifier = TokenVerifier(JWT_SECRET)
    token = issue_token("u1", JWT_SECRET, email="u1@example.com")
    identity = verifier.verify(f"Bearer {token}")
    assert identity.uid == "u1"
    assert identity.email == "u1@example.com"


@pytest.mark.parametrize(
    "header, message",
    [
        (None, "Unauthorized: No token provided"),
        ("", "Unauthorized: No token provided"),
        ("Basic abc", "Unauthorized: Expected 'Bearer <token>'"),
        ("Bearer ", "Unauthorized: Expected 'Bearer <token>'"),
        ("Bearer not-a-jwt", "Unauthorized: Invalid token"),
    ],
)
def test_bad_headers_are_rejected(header, message):
    with pytest.raises(AuthError) as exc:
        TokenVerifier(JWT_SECRET).verify(header)
    assert str(exc.value) == message


def test_expired_and_foreign_tokens_are_rejected():
    verifier = TokenVerifier(JWT_SECRET)
    with pytest.raises(AuthError, match="expired"):
        verifier.verify(f"Bearer {issue_token('u1', JWT_SECRET, ttl=-10)}")
    with pytest.raises(AuthError, match="Invalid"):
        verifier.verify(f"Bearer {issue_token('u1', 'another-secret-that-is-long-enough')}")


def test_token_without_subject_is_rejected():
    token = jwt.encode({"exp": 9999999999}, JWT_SECRET, algorithm="HS256")
    with pytest.raises(AuthError):
        TokenVerifier(JWT_SECRET).verify(f"Bearer {token}")


def test_unconfigured_verifier_rejects_everything():
    verifier = TokenVerifier.from_config({"auth": {"jwt_secret": ""}})
    with pytest.raises(AuthError, match="not configured"):
        verifier.verify(f"Bearer {issue_token('u1', JWT_SECRET)}")


def test_audience_is_enforced():
    verifier = TokenVerifier(JWT_SECRET, audience="multamind")
    assert verifier.verify(f"Bearer {issue_token('u1', JWT_SECRET, audience='multamind')}").uid == "u1"
    with pytest.raises(AuthError):
        verifier.verify(f"Bearer {issue_token('u1', JWT_SECRET, audience='elsewhere')}")
