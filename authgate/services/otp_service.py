"""OTP engine - issue, deliver and verify one-time passcodes"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from authgate.config import DeliveryMode, Settings
from authgate.core.exceptions import (
    DatabaseError,
    DeliveryFailureError,
    OTPInvalidOrExpiredError,
    OTPTooManyAttemptsError,
    ValidationError,
)
from authgate.core.security import get_password_hash, verify_password
from authgate.core.timeutil import utcnow
from authgate.models.otp import OTP_CHANNELS, OTPChallenge
from authgate.models.user import User
from authgate.services.delivery import OTPSender, redact_email, redact_phone

logger = logging.getLogger(__name__)

EMAIL_CHANNEL = "email"
SMS_CHANNEL = "sms"


class OTPFailureReason(str, Enum):
    INVALID_OR_EXPIRED = "invalid_or_expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"


@dataclass(frozen=True)
class ChallengeIssued:
    challenge_id: int
    expires_in: int
    delivered: bool


@dataclass(frozen=True)
class VerifyResult:
    ok: bool
    reason: Optional[OTPFailureReason] = None

    def raise_for_failure(self) -> None:
        """Turn a failed result into the matching API error"""
        if self.ok:
            return
        if self.reason == OTPFailureReason.TOO_MANY_ATTEMPTS:
            raise OTPTooManyAttemptsError()
        raise OTPInvalidOrExpiredError()


def _redact(channel: str, destination: str) -> str:
    return redact_email(destination) if channel == EMAIL_CHANNEL else redact_phone(destination)


class OTPEngine:
    """
    One live challenge per (user, channel).

    Requesting a new code revokes the previous live challenge, so only the
    latest code can ever verify. Every wrong guess costs one of the
    challenge's attempts; once the counter reaches the maximum the challenge
    is dead even for the correct code.
    """

    def __init__(
        self,
        config: Settings,
        senders: Dict[str, OTPSender],
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.code_length = config.OTP_LENGTH
        self.ttl_seconds = config.OTP_EXPIRE_SECONDS
        self.max_attempts = config.OTP_MAX_ATTEMPTS
        self.delivery_mode = config.OTP_DELIVERY_MODE
        self.delivery_timeout = config.DELIVERY_TIMEOUT_SECONDS
        self.senders = senders
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def generate_code(self) -> str:
        return "".join(str(secrets.randbelow(10)) for _ in range(self.code_length))

    @staticmethod
    def _validate_destination(channel: str, destination: str) -> str:
        if channel not in OTP_CHANNELS:
            raise ValidationError(f"Unsupported verification channel: {channel}")
        value = (destination or "").strip()
        if not value:
            raise ValidationError("Destination is required")
        if channel == EMAIL_CHANNEL:
            if "@" not in value:
                raise ValidationError("Email destination must be an email address")
            return value.lower()
        if "@" in value:
            raise ValidationError("SMS destination must be a phone number")
        return value

    def _live_filter(self, query, user_id: int, channel: str, now: datetime):
        return query.filter(
            OTPChallenge.user_id == user_id,
            OTPChallenge.verification_type == channel,
            OTPChallenge.is_verified.is_(False),
            OTPChallenge.revoked.is_(False),
            OTPChallenge.expires_at > now,
        )

    async def request_challenge(
        self,
        db: Session,
        user: User,
        channel: str,
        destination: str,
    ) -> ChallengeIssued:
        """
        Persist a new challenge and deliver its code

        The row is committed before delivery, so a delivery failure leaves
        it in place; the caller simply requests again.

        Raises:
            ValidationError: unknown channel or unusable destination
            DeliveryFailureError: provider mode only, when sending fails or times out
        """
        destination = self._validate_destination(channel, destination)
        code = self.generate_code()
        challenge_id = await run_in_threadpool(self._store_challenge, db, user.id, channel, destination, code)

        delivered = await self._deliver(channel, destination, code)
        return ChallengeIssued(challenge_id=challenge_id, expires_in=self.ttl_seconds, delivered=delivered)

    def _store_challenge(self, db: Session, user_id: int, channel: str, destination: str, code: str) -> int:
        """Revoke the live challenge of this channel and persist the new one; returns its id"""
        now = self._now()
        try:
            db.execute(
                update(OTPChallenge)
                .where(
                    OTPChallenge.user_id == user_id,
                    OTPChallenge.verification_type == channel,
                    OTPChallenge.is_verified.is_(False),
                    OTPChallenge.revoked.is_(False),
                )
                .values(revoked=True)
                .execution_options(synchronize_session=False)
            )
            challenge = OTPChallenge(
                user_id=user_id,
                email=destination if channel == EMAIL_CHANNEL else None,
                phone_number=destination if channel == SMS_CHANNEL else None,
                code_hash=get_password_hash(code),
                verification_type=channel,
                is_verified=False,
                revoked=False,
                attempts=0,
                expires_at=now + timedelta(seconds=self.ttl_seconds),
            )
            db.add(challenge)
            db.commit()
            challenge_id = challenge.id
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Failed to store OTP challenge for user {user_id}: {exc}")
            raise DatabaseError("Failed to create verification code")

        return challenge_id

    async def _deliver(self, channel: str, destination: str, code: str) -> bool:
        sender = self.senders.get(channel)
        try:
            if sender is None:
                raise DeliveryFailureError(f"No sender configured for channel: {channel}")
            await asyncio.wait_for(
                sender.send(destination, code, self.ttl_seconds),
                timeout=self.delivery_timeout,
            )
            return True
        except asyncio.TimeoutError:
            failure = DeliveryFailureError("Verification code delivery timed out")
        except DeliveryFailureError as exc:
            failure = exc

        if self.delivery_mode == DeliveryMode.LOGGED_FALLBACK:
            logger.warning(
                f"OTP delivery failed ({failure.message}); logged fallback for "
                f"{_redact(channel, destination)}: code={code}"
            )
            return False

        logger.error(f"OTP delivery failed for {_redact(channel, destination)}: {failure.message}")
        raise failure

    def verify_challenge(self, db: Session, user: User, code: str, channel: str) -> VerifyResult:
        """
        Check a submitted code against the user's live challenge

        Args:
            db: Database session
            user: Challenge owner
            code: Submitted code
            channel: "email" or "sms"

        Returns:
            VerifyResult with ok=True, or the failure reason
        """
        if channel not in OTP_CHANNELS:
            return VerifyResult(False, OTPFailureReason.INVALID_OR_EXPIRED)

        now = self._now()
        user_id = user.id
        challenge = (
            self._live_filter(db.query(OTPChallenge), user_id, channel, now)
            .order_by(OTPChallenge.created_at.desc(), OTPChallenge.id.desc())
            .first()
        )
        if challenge is None:
            return VerifyResult(False, OTPFailureReason.INVALID_OR_EXPIRED)

        challenge_id = challenge.id
        if challenge.attempts >= self.max_attempts:
            logger.warning(f"OTP challenge {challenge_id} locked for user {user_id}")
            return VerifyResult(False, OTPFailureReason.TOO_MANY_ATTEMPTS)

        try:
            if not verify_password((code or "").strip(), challenge.code_hash):
                db.execute(
                    update(OTPChallenge)
                    .where(
                        OTPChallenge.id == challenge_id,
                        OTPChallenge.is_verified.is_(False),
                    )
                    .values(attempts=OTPChallenge.attempts + 1)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                logger.info(f"Wrong OTP submitted for user {user_id} ({channel})")
                return VerifyResult(False, OTPFailureReason.INVALID_OR_EXPIRED)

            result = db.execute(
                update(OTPChallenge)
                .where(
                    OTPChallenge.id == challenge_id,
                    OTPChallenge.is_verified.is_(False),
                    OTPChallenge.revoked.is_(False),
                    OTPChallenge.attempts < self.max_attempts,
                )
                .values(is_verified=True, verified_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return VerifyResult(False, OTPFailureReason.INVALID_OR_EXPIRED)

            if channel == EMAIL_CHANNEL:
                user.is_verified = True
            else:
                user.phone_verified = True
                user.phone_verified_at = now
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"OTP verification failed for user {user_id}: {exc}")
            raise DatabaseError("Failed to verify code")

        logger.info(f"OTP verified for user {user_id} ({channel})")
        return VerifyResult(True)

    def cleanup_expired(self, db: Session) -> int:
        """Delete expired or revoked challenges"""
        now = self._now()
        try:
            deleted = (
                db.query(OTPChallenge)
                .filter(or_(OTPChallenge.expires_at <= now, OTPChallenge.revoked.is_(True)))
                .delete(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Failed to clean OTP challenges: {exc}")
            raise DatabaseError("Failed to clean verification codes")

        if deleted:
            logger.info(f"Cleaned {deleted} expired/revoked OTP challenges")
        return deleted
