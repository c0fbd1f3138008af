"""
JWT signing and verification.

Access and refresh tokens are signed with two independent secrets. Every token
carries a ``type`` claim that is checked explicitly on verification, so a
refresh token can never be used as an access token (and vice versa) even if
both secrets were configured to the same value.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import jwt

from warden.auth.errors import InvalidToken, MalformedToken, TokenExpired, WrongSecret


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenConfig:
    """Signing secrets and lifetimes, injected into TokenSigner at construction."""

    access_secret: str
    refresh_secret: str
    algorithm: str = "HS256"
    issuer: str = "warden"
    access_ttl_seconds: int = 15 * 60
    refresh_ttl_seconds: int = 7 * 24 * 3600


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    refresh_jti: str
    refresh_expires_at: datetime
    expires_in: int


class TokenSigner:
    """Stateless signer/verifier for access and refresh tokens."""

    def __init__(self, config: TokenConfig) -> None:
        self.config = config

    def _secret(self, kind: TokenKind) -> str:
        return self.config.access_secret if kind is TokenKind.ACCESS else self.config.refresh_secret

    def default_ttl(self, kind: TokenKind) -> timedelta:
        seconds = self.config.access_ttl_seconds if kind is TokenKind.ACCESS else self.config.refresh_ttl_seconds
        return timedelta(seconds=seconds)

    def sign(self, kind: TokenKind, claims: dict[str, Any], ttl: timedelta | None = None) -> str:
        """
        Sign a token of the given kind.

        ``claims`` must contain ``sub``. ``type``, ``iat``, ``exp``, ``iss`` and
        (unless supplied) ``jti`` are set here and override caller values.
        """
        if "sub" not in claims:
            msg = "claims must include 'sub'"
            raise ValueError(msg)
        now = datetime.now(timezone.utc)
        payload: dict[str, Any] = {"jti": str(uuid.uuid4()), **claims}
        payload.update(
            {
                "sub": str(claims["sub"]),
                "type": kind.value,
                "iat": now,
                "exp": now + (ttl if ttl is not None else self.default_ttl(kind)),
                "iss": self.config.issuer,
            }
        )
        return jwt.encode(payload, self._secret(kind), algorithm=self.config.algorithm)

    def verify(self, kind: TokenKind, token: str, *, verify_exp: bool = True) -> dict[str, Any]:
        """
        Verify signature, expiry, issuer and type.

        ``verify_exp=False`` skips only the expiry check, for callers that must
        identify the owner of a lapsed token.

        Raises:
            TokenExpired: The token's ``exp`` is in the past.
            WrongSecret: Signature does not match this kind's secret.
            MalformedToken: Not a decodable JWT or missing required claims.
            InvalidToken: Wrong issuer or wrong ``type`` claim.
        """
        try:
            payload: dict[str, Any] = jwt.decode(
                token,
                self._secret(kind),
                algorithms=[self.config.algorithm],
                issuer=self.config.issuer,
                options={"require": ["exp", "iat", "sub", "type"], "verify_exp": verify_exp},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpired from None
        except jwt.InvalidSignatureError:
            raise WrongSecret from None
        except (jwt.DecodeError, jwt.MissingRequiredClaimError):
            raise MalformedToken from None
        except jwt.InvalidTokenError:
            raise InvalidToken from None

        if payload.get("type") != kind.value:
            msg = f"Expected token type '{kind.value}', got '{payload.get('type')}'"
            raise InvalidToken(msg)
        return payload

    @staticmethod
    def decode_unsafe(token: str) -> dict[str, Any] | None:
        """Decode without any verification. Only for reading ``exp``; never for authorization."""
        try:
            return jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
        except jwt.InvalidTokenError:
            return None

    def issue_pair(self, user_id: int, email: str | None = None, role: str | None = None) -> TokenPair:
        """Sign a fresh access + refresh pair for a user."""
        access_claims: dict[str, Any] = {"sub": user_id}
        if email is not None:
            access_claims["email"] = email
        if role is not None:
            access_claims["role"] = role
        access_token = self.sign(TokenKind.ACCESS, access_claims)

        refresh_jti = str(uuid.uuid4())
        refresh_ttl = self.default_ttl(TokenKind.REFRESH)
        refresh_token = self.sign(TokenKind.REFRESH, {"sub": user_id, "jti": refresh_jti}, refresh_ttl)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_jti=refresh_jti,
            refresh_expires_at=datetime.now(timezone.utc) + refresh_ttl,
            expires_in=self.config.access_ttl_seconds,
        )


def expiry_of(payload: dict[str, Any]) -> datetime | None:
    """Return the ``exp`` claim of a decoded payload as an aware datetime."""
    exp = payload.get("exp")
    if exp is None:
        return None
    try:
        return datetime.fromtimestamp(int(exp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def token_digest(token: str) -> str:
    """sha256 hex digest used to store and look up tokens without keeping their value."""
    return hashlib.sha256(token.encode()).hexdigest()
