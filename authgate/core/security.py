"""Security utilities - password hashing, opaque token hashing, signed access tokens"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import bcrypt
from jose import JWTError, jwt

from authgate.config import Settings, settings
from authgate.core.exceptions import (
    InvalidTokenTypeError,
    TokenExpiredError,
    TokenMalformedError,
    TokenNotYetValidError,
)

logger = logging.getLogger(__name__)

ACCESS_KIND = "access"
OAUTH_STATE_KIND = "oauth_state"

# bcrypt only looks at the first 72 bytes of its input
BCRYPT_MAX_BYTES = 72


def get_password_hash(password: str, rounds: Optional[int] = None) -> str:
    """
    Hash a password (or one-time passcode) using bcrypt

    Args:
        password: Plain text secret
        rounds: bcrypt cost factor, defaults to BCRYPT_ROUNDS

    Returns:
        str: Hashed secret
    """
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt(rounds=rounds or settings.BCRYPT_ROUNDS)
    ).decode('utf-8')


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """
    Verify a password against its hash

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password, None for accounts without one

    Returns:
        bool: True if password matches
    """
    if not hashed_password:
        return False
    encoded = plain_password.encode('utf-8')
    if len(encoded) > BCRYPT_MAX_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, hashed_password.encode('utf-8'))
    except ValueError:
        return False


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to store opaque tokens at rest."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def generate_opaque_token(num_bytes: int = 32) -> str:
    """High-entropy hex token; 32 bytes gives 256 bits."""
    return secrets.token_hex(num_bytes)


def resolve_signing_secret(config: Settings) -> str:
    """
    Return the configured signing secret, or a per-process random one.

    A generated secret does not survive a restart, so every outstanding
    access token dies with the process.
    """
    if config.SECRET_KEY:
        return config.SECRET_KEY

    if config.is_production:
        logger.critical(
            "SECRET_KEY is not set in production; all sessions will be invalidated on every restart"
        )
    else:
        logger.warning("SECRET_KEY not set - generated a random signing secret for this process only")
    return secrets.token_hex(64)


@dataclass(frozen=True)
class TokenClaims:
    """Verified claim set of a signed token"""
    subject: str
    kind: str
    issued_at: datetime
    expires_at: datetime
    role: Optional[str] = None
    token_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class AccessTokenIssuer:
    """Mint and verify short-lived signed tokens. Holds no state besides its key."""

    RESERVED_CLAIMS = frozenset({"sub", "role", "kind", "iss", "aud", "iat", "nbf", "exp", "jti"})

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        ttl_seconds: int = 7 * 24 * 3600,
        issuer: str = "authgate-api",
        audience: str = "authgate-client",
        leeway_seconds: int = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("Signing secret must not be empty")
        self._secret = secret
        self.algorithm = algorithm
        self.ttl_seconds = ttl_seconds
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, config: Settings, secret: Optional[str] = None) -> "AccessTokenIssuer":
        return cls(
            secret or resolve_signing_secret(config),
            algorithm=config.ALGORITHM,
            ttl_seconds=config.access_token_ttl_seconds,
            issuer=config.TOKEN_ISSUER,
            audience=config.TOKEN_AUDIENCE,
            leeway_seconds=config.TOKEN_CLOCK_SKEW_SECONDS,
        )

    def _now(self) -> datetime:
        return self._clock()

    def _encode(self, kind: str, subject: str, ttl_seconds: int, claims: Dict[str, Any]) -> str:
        now = self._now()
        payload = dict(claims)
        payload.update({
            "sub": subject,
            "kind": kind,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "nbf": now,
            "exp": now + timedelta(seconds=ttl_seconds),
            "jti": secrets.token_urlsafe(16),
        })
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def issue_access_token(
        self,
        user_id: Any,
        role: str,
        extra_claims: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Create signed access token

        Args:
            user_id: Token subject
            role: Role claim checked by authorization dependencies
            extra_claims: Additional non-reserved claims

        Returns:
            str: Encoded JWT
        """
        claims = {
            key: value
            for key, value in (extra_claims or {}).items()
            if key not in self.RESERVED_CLAIMS
        }
        claims["role"] = role
        return self._encode(ACCESS_KIND, str(user_id), self.ttl_seconds, claims)

    def issue_state_token(self, ttl_seconds: int, extra_claims: Optional[Dict[str, Any]] = None) -> str:
        """Signed OAuth state value; never accepted as an access token."""
        claims = {
            key: value
            for key, value in (extra_claims or {}).items()
            if key not in self.RESERVED_CLAIMS
        }
        return self._encode(OAUTH_STATE_KIND, secrets.token_urlsafe(16), ttl_seconds, claims)

    def verify(self, token: str, expected_kind: Optional[str] = ACCESS_KIND) -> TokenClaims:
        """
        Verify signature, issuer, audience, expiry and not-before

        Raises:
            TokenExpiredError: exp is in the past
            TokenNotYetValidError: nbf is in the future
            TokenMalformedError: anything else wrong with the token
            InvalidTokenTypeError: kind differs from expected_kind
        """
        if not token:
            raise TokenMalformedError()
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": False, "verify_nbf": False, "leeway": self.leeway_seconds},
            )
        except JWTError as exc:
            raise TokenMalformedError(f"Malformed token: {exc}")

        # exp and nbf are both judged against the issuer's clock
        now_ts = self._now().timestamp()
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            raise TokenMalformedError("Malformed token: exp")
        if exp <= now_ts - self.leeway_seconds:
            raise TokenExpiredError()

        nbf = payload.get("nbf")
        if nbf is not None:
            if not isinstance(nbf, (int, float)):
                raise TokenMalformedError("Malformed token: nbf")
            if nbf > now_ts + self.leeway_seconds:
                raise TokenNotYetValidError()

        subject = payload.get("sub")
        kind = payload.get("kind")
        iat = payload.get("iat")
        if not subject or not kind or not isinstance(iat, (int, float)):
            raise TokenMalformedError("Malformed token: missing claims")

        if expected_kind is not None and kind != expected_kind:
            raise InvalidTokenTypeError()

        return TokenClaims(
            subject=str(subject),
            kind=kind,
            role=payload.get("role"),
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            token_id=payload.get("jti"),
            extra={k: v for k, v in payload.items() if k not in self.RESERVED_CLAIMS},
        )

    def decode_without_verification(self, token: str) -> Optional[Dict[str, Any]]:
        """Diagnostics only. Never use the result for an authorization decision."""
        try:
            return jwt.get_unverified_claims(token)
        except JWTError:
            return None
