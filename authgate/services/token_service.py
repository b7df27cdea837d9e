"""Refresh token rotation and revocation service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from authgate.core.exceptions import (
    DatabaseError,
    InvalidRefreshTokenError,
    RefreshTokenRaceLostError,
    UserInactiveOrMissingError,
)
from authgate.core.security import AccessTokenIssuer, generate_opaque_token, hash_token
from authgate.core.timeutil import as_utc, utcnow
from authgate.models.security import RefreshToken
from authgate.models.user import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedRefreshToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    user_id: int
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime
    token_type: str = "bearer"


class RefreshTokenLedger:
    """
    Persisted single-use refresh tokens.

    Each row is ACTIVE until it is rotated out (revoked with a successor),
    revoked (logout, revoke-all) or passively expires. Only the SHA-256 of the
    opaque token is stored. The ledger never trusts a caller-supplied user id
    when rotating; ownership comes from the row.
    """

    def __init__(
        self,
        issuer: AccessTokenIssuer,
        *,
        ttl_days: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.issuer = issuer
        self.ttl = timedelta(days=ttl_days)
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _create_record(self, db: Session, user_id: int, now: datetime) -> Tuple[RefreshToken, str]:
        raw = generate_opaque_token()
        record = RefreshToken(
            user_id=user_id,
            token_hash=hash_token(raw),
            expires_at=now + self.ttl,
            revoked=False,
        )
        db.add(record)
        db.flush()
        return record, raw

    def issue(self, db: Session, user_id: int) -> IssuedRefreshToken:
        """Persist a fresh refresh token for user_id."""
        now = self._now()
        try:
            record, raw = self._create_record(db, user_id, now)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to create refresh token for user %s: %s", user_id, exc)
            raise DatabaseError("Failed to create refresh token")

        logger.info("Refresh token created for user: %s", user_id)
        return IssuedRefreshToken(token=raw, expires_at=now + self.ttl)

    def issue_pair(self, db: Session, user: User) -> TokenPair:
        """Access token plus a new refresh token; the common end of every sign-in flow."""
        refresh = self.issue(db, user.id)
        access = self.issuer.issue_access_token(user.id, user.role)
        return TokenPair(
            user_id=user.id,
            access_token=access,
            refresh_token=refresh.token,
            expires_in=self.issuer.ttl_seconds,
            refresh_expires_at=refresh.expires_at,
        )

    def rotate(self, db: Session, presented: str) -> TokenPair:
        """
        Exchange a refresh token for a new access/refresh pair.

        The conditional revoke is the serialization point: of two concurrent
        rotations of the same token exactly one updates the row.

        Raises:
            InvalidRefreshTokenError: unknown, revoked or expired token
            RefreshTokenRaceLostError: a concurrent rotation revoked it first
            UserInactiveOrMissingError: owner deleted or deactivated
        """
        now = self._now()
        if not presented:
            raise InvalidRefreshTokenError()

        record = (
            db.query(RefreshToken)
            .filter(RefreshToken.token_hash == hash_token(presented))
            .first()
        )
        if record is None:
            raise InvalidRefreshTokenError()

        if record.revoked:
            if record.replaced_by_id is not None:
                logger.warning(
                    "Rotated refresh token presented again for user %s (token %s...)",
                    record.user_id,
                    presented[:8],
                )
            raise InvalidRefreshTokenError()

        if now >= as_utc(record.expires_at):
            raise InvalidRefreshTokenError()

        user = db.get(User, record.user_id)
        if user is None or not user.is_active:
            raise UserInactiveOrMissingError()

        record_id = record.id
        user_id, role = user.id, user.role
        try:
            result = db.execute(
                update(RefreshToken)
                .where(
                    RefreshToken.id == record_id,
                    RefreshToken.revoked.is_(False),
                    RefreshToken.expires_at > now,
                )
                .values(revoked=True, revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                logger.warning(
                    "Refresh token rotation lost race for user %s (token %s...)",
                    user_id,
                    presented[:8],
                )
                raise RefreshTokenRaceLostError()

            successor, raw = self._create_record(db, user_id, now)
            db.execute(
                update(RefreshToken)
                .where(RefreshToken.id == record_id)
                .values(replaced_by_id=successor.id)
                .execution_options(synchronize_session=False)
            )
            access = self.issuer.issue_access_token(user_id, role)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Refresh token rotation failed for user %s: %s", user_id, exc)
            raise DatabaseError("Failed to rotate refresh token")

        logger.info("Refresh token rotated for user: %s", user_id)
        return TokenPair(
            user_id=user_id,
            access_token=access,
            refresh_token=raw,
            expires_in=self.issuer.ttl_seconds,
            refresh_expires_at=now + self.ttl,
        )

    def revoke(self, db: Session, token: str, user_id: Optional[int] = None) -> bool:
        """
        Idempotent. True only if this call flipped a live token.

        With user_id set, a token owned by anyone else is left alone.
        """
        if not token:
            return False
        now = self._now()
        conditions = [
            RefreshToken.token_hash == hash_token(token),
            RefreshToken.revoked.is_(False),
            RefreshToken.expires_at > now,
        ]
        if user_id is not None:
            conditions.append(RefreshToken.user_id == user_id)
        try:
            result = db.execute(
                update(RefreshToken)
                .where(*conditions)
                .values(revoked=True, revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to revoke refresh token: %s", exc)
            raise DatabaseError("Failed to revoke refresh token")

        if result.rowcount > 0:
            logger.info("Refresh token revoked: %s...", token[:8])
            return True
        return False

    def revoke_all(self, db: Session, user_id: int) -> int:
        """Revoke every unrevoked token of a user (password change, global logout)."""
        now = self._now()
        try:
            result = db.execute(
                update(RefreshToken)
                .where(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
                .values(revoked=True, revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to revoke tokens for user %s: %s", user_id, exc)
            raise DatabaseError("Failed to revoke refresh tokens")

        logger.info("Revoked %s refresh tokens for user: %s", result.rowcount, user_id)
        return result.rowcount

    def sweep(self, db: Session) -> int:
        """Delete expired or revoked rows. Only touches logically dead tokens."""
        now = self._now()
        try:
            deleted = (
                db.query(RefreshToken)
                .filter(or_(RefreshToken.expires_at <= now, RefreshToken.revoked.is_(True)))
                .delete(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to clean refresh tokens: %s", exc)
            raise DatabaseError("Failed to clean refresh tokens")

        if deleted:
            logger.info("Cleaned %s expired/revoked refresh tokens", deleted)
        return deleted
