"""Bearer identity tokens (HS256 JWTs by default)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import jwt

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """The bearer token is missing, malformed, expired or otherwise invalid."""


@dataclass(frozen=True)
class Identity:
    uid: str
    email: Optional[str] = None


class TokenVerifier:
    def __init__(self, secret: str, *, algorithms: Sequence[str] = ("HS256",), audience: Optional[str] = None) -> None:
        self.secret = secret
        self.algorithms = list(algorithms)
        self.audience = audience

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "TokenVerifier":
        auth_cfg = cfg.get("auth", {}) or {}
        if not auth_cfg.get("jwt_secret"):
            logger.warning("auth.jwt_secret is not set; every bearer token will be rejected")
        return cls(
            str(auth_cfg.get("jwt_secret") or ""),
            algorithms=auth_cfg.get("jwt_algorithms") or ["HS256"],
            audience=auth_cfg.get("audience"),
        )

    def verify(self, authorization: Optional[str]) -> Identity:
        """Validate an ``Authorization`` header value and return the caller."""
        if not authorization:
            raise AuthError("Unauthorized: No token provided")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthError("Unauthorized: Expected 'Bearer <token>'")
        if not self.secret:
            raise AuthError("Unauthorized: Token verification is not configured")

        options = {"require": ["sub", "exp"]}
        try:
            claims = jwt.decode(
                token.strip(),
                self.secret,
                algorithms=self.algorithms,
                audience=self.audience,
                options=options,
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthError("Unauthorized: Token expired") from e
        except jwt.InvalidTokenError as e:
            logger.info("rejected bearer token: %s", e)
            raise AuthError("Unauthorized: Invalid token") from e
        return Identity(uid=str(claims["sub"]), email=claims.get("email"))


def issue_token(
    uid: str,
    secret: str,
    *,
    email: Optional[str] = None,
    ttl: int = 3600,
    audience: Optional[str] = None,
    algorithm: str = "HS256",
) -> str:
    """Mint a token the verifier accepts (dev tooling and tests)."""
    now = int(time.time())
    claims: Dict[str, Any] = {"sub": uid, "iat": now, "exp": now + ttl}
    if email:
        claims["email"] = email
    if audience:
        claims["aud"] = audience
    return jwt.encode(claims, secret, algorithm=algorithm)
