"""API dependencies - service access, authentication and authorization"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from authgate.core.database import get_db
from authgate.core.exceptions import (
    AccountDeactivatedError,
    AuthorizationError,
    InvalidTokenTypeError,
    MissingTokenError,
    TokenExpiredError,
    TokenInvalidError,
    TokenVerificationError,
    UserNotFoundError,
)
from authgate.core.security import ACCESS_KIND, TokenClaims
from authgate.models.user import User
from authgate.services.registry import Services

# HTTP Bearer token scheme; a missing header is reported by the gate itself
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CallerIdentity:
    """Resolved caller, attached to request.state for handlers and audit logging"""
    user_id: int
    email: str
    role: str
    is_verified: bool
    token_issued_at: datetime
    token_expires_at: datetime
    token_id: Optional[str] = None

    def audit_metadata(self) -> dict:
        return {
            "jti": self.token_id,
            "iat": self.token_issued_at.isoformat(),
            "exp": self.token_expires_at.isoformat(),
        }


def get_services(request: Request) -> Services:
    return request.app.state.services


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def enforce_rate_limit(
    request: Request,
    services: Services,
    bucket: str,
    limit: int,
    identifier: Optional[str] = None,
) -> None:
    """
    Count one request against bucket for this client

    Raises:
        RateLimitExceededError: limit reached within the configured window
    """
    key = f"{bucket}:{client_ip(request)}"
    if identifier:
        key = f"{key}:{identifier.strip().lower()}"
    services.rate_limiter.hit(key, limit, services.settings.RATE_LIMIT_WINDOW_SECONDS)


def _verify_access_token(services: Services, token: str) -> TokenClaims:
    try:
        claims = services.issuer.verify(token, expected_kind=None)
    except TokenExpiredError:
        raise
    except TokenVerificationError:
        raise TokenInvalidError()

    if claims.kind != ACCESS_KIND:
        raise InvalidTokenTypeError()
    return claims


def _resolve_user(db: Session, claims: TokenClaims) -> User:
    try:
        user_id = int(claims.subject)
    except ValueError:
        raise TokenInvalidError()

    user = db.get(User, user_id)
    if user is None:
        raise UserNotFoundError()
    if not user.is_active:
        raise AccountDeactivatedError()
    return user


def _attach_identity(request: Request, user: User, claims: TokenClaims) -> None:
    request.state.identity = CallerIdentity(
        user_id=user.id,
        email=user.email,
        role=user.role,
        is_verified=user.is_verified,
        token_issued_at=claims.issued_at,
        token_expires_at=claims.expires_at,
        token_id=claims.token_id,
    )


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> User:
    """
    Get current authenticated user from the bearer access token

    Raises:
        MissingTokenError: no bearer token
        TokenExpiredError: token past its expiry
        TokenInvalidError: any other verification failure
        InvalidTokenTypeError: token is not an access token
        UserNotFoundError: subject no longer exists
        AccountDeactivatedError: subject is deactivated
    """
    if credentials is None or not credentials.credentials:
        raise MissingTokenError()

    claims = _verify_access_token(services, credentials.credentials)
    user = _resolve_user(db, claims)
    _attach_identity(request, user, claims)
    return user


def get_optional_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> Optional[User]:
    """Same checks as get_current_user, but any failure means anonymous"""
    if credentials is None or not credentials.credentials:
        return None
    try:
        claims = _verify_access_token(services, credentials.credentials)
        user = _resolve_user(db, claims)
    except (TokenExpiredError, TokenInvalidError, InvalidTokenTypeError,
            UserNotFoundError, AccountDeactivatedError):
        return None
    _attach_identity(request, user, claims)
    return user


def get_caller_identity(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> CallerIdentity:
    return request.state.identity


def require_role(*roles: str) -> Callable[..., User]:
    """Dependency factory admitting only callers whose role is in roles"""
    allowed = frozenset(roles)

    def dependency(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed:
            raise AuthorizationError("Admin access required" if "admin" in allowed else "Insufficient permissions")
        return current_user

    return dependency


get_current_admin_user = require_role("admin", "super_admin")
