"""Construction of the application's service graph."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from authgate.config import Settings
from authgate.core.security import AccessTokenIssuer
from authgate.services.audit_service import AuditService
from authgate.services.delivery import EmailOTPSender, OTPSender, SmsOTPSender
from authgate.services.federation_service import FederationService
from authgate.services.otp_service import EMAIL_CHANNEL, SMS_CHANNEL, OTPEngine
from authgate.services.rate_limiter import InMemoryRateLimiter
from authgate.services.sweeper import CredentialSweeper
from authgate.services.token_service import RefreshTokenLedger
from authgate.services.user_service import UserService


@dataclass
class Services:
    """Everything a request handler may need, built once per process"""
    settings: Settings
    issuer: AccessTokenIssuer
    ledger: RefreshTokenLedger
    otp_engine: OTPEngine
    users: UserService
    federation: FederationService
    rate_limiter: InMemoryRateLimiter
    audit: AuditService
    sweeper: CredentialSweeper
    email_sender: Optional[OTPSender] = None


def build_services(
    config: Settings,
    *,
    session_factory: Optional[Callable[[], Session]] = None,
    senders: Optional[Dict[str, OTPSender]] = None,
    issuer: Optional[AccessTokenIssuer] = None,
) -> Services:
    """
    Wire the components together

    Args:
        config: Application settings
        session_factory: Session maker for the sweeper, defaults to SessionLocal
        senders: OTP senders by channel, defaults to SMTP email and Twilio SMS
        issuer: Pre-built token issuer, defaults to one built from config
    """
    if session_factory is None:
        from authgate.core.database import SessionLocal
        session_factory = SessionLocal

    issuer = issuer or AccessTokenIssuer.from_settings(config)
    ledger = RefreshTokenLedger(issuer, ttl_days=config.REFRESH_TOKEN_EXPIRE_DAYS)
    if senders is None:
        senders = {
            EMAIL_CHANNEL: EmailOTPSender(config),
            SMS_CHANNEL: SmsOTPSender(config),
        }
    otp_engine = OTPEngine(config, senders)

    return Services(
        settings=config,
        issuer=issuer,
        ledger=ledger,
        otp_engine=otp_engine,
        users=UserService(config, ledger),
        federation=FederationService(config, issuer, ledger),
        rate_limiter=InMemoryRateLimiter(),
        audit=AuditService(),
        email_sender=senders.get(EMAIL_CHANNEL),
        sweeper=CredentialSweeper(
            session_factory,
            otp_engine,
            ledger,
            interval_seconds=config.SWEEP_INTERVAL_SECONDS,
        ),
    )
