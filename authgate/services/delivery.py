"""
OTP delivery: email via fastapi-mail (SMTP) and SMS via the Twilio REST API.

Both senders expose the same coroutine, ``send(destination, code, ttl_seconds)``,
and raise DeliveryFailureError for anything that keeps the message from being
accepted by the provider, including a transport that was never configured.
Whether that failure is fatal is decided by the OTP engine's delivery mode,
not here.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx
from fastapi_mail import ConnectionConfig, FastMail, MessageSchema, MessageType

from authgate.config import Settings
from authgate.core.exceptions import DeliveryFailureError

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def redact_phone(phone: str) -> str:
    return f"***{phone[-4:]}" if len(phone) > 4 else "***"


class OTPSender(Protocol):
    async def send(self, destination: str, code: str, ttl_seconds: int) -> None: ...


def _minutes(ttl_seconds: int) -> str:
    minutes = max(1, round(ttl_seconds / 60))
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


class EmailOTPSender:
    """SMTP delivery through fastapi-mail."""

    def __init__(self, config: Settings) -> None:
        self.app_name = config.APP_NAME
        self._mail: Optional[FastMail] = None
        if config.MAIL_SERVER and config.MAIL_FROM:
            mail_config = ConnectionConfig(
                MAIL_USERNAME=config.MAIL_USERNAME,
                MAIL_PASSWORD=config.MAIL_PASSWORD,
                MAIL_FROM=config.MAIL_FROM,
                MAIL_FROM_NAME=config.MAIL_FROM_NAME,
                MAIL_PORT=config.MAIL_PORT,
                MAIL_SERVER=config.MAIL_SERVER,
                MAIL_STARTTLS=config.MAIL_STARTTLS,
                MAIL_SSL_TLS=config.MAIL_SSL_TLS,
                USE_CREDENTIALS=bool(config.MAIL_USERNAME),
                VALIDATE_CERTS=True,
            )
            self._mail = FastMail(mail_config)

    @property
    def is_configured(self) -> bool:
        return self._mail is not None

    def build_message(self, destination: str, code: str, ttl_seconds: int) -> MessageSchema:
        validity = _minutes(ttl_seconds)
        body = (
            f"<div style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;\">"
            f"<h2>Email Verification</h2>"
            f"<p>Use the following code to verify your {self.app_name} account:</p>"
            f"<h1 style=\"letter-spacing: 5px;\">{code}</h1>"
            f"<p>This code expires in {validity}. If you didn't request it, ignore this email.</p>"
            f"</div>"
        )
        return MessageSchema(
            subject=f"{self.app_name} - Email Verification Code",
            recipients=[destination],
            body=body,
            subtype=MessageType.html,
        )

    async def send(self, destination: str, code: str, ttl_seconds: int) -> None:
        if self._mail is None:
            raise DeliveryFailureError("Email service not configured")
        try:
            await self._mail.send_message(self.build_message(destination, code, ttl_seconds))
        except Exception as exc:
            logger.error("Failed to send OTP email to %s: %s", redact_email(destination), exc)
            raise DeliveryFailureError("Failed to send verification email") from exc
        logger.info("OTP email sent to: %s", redact_email(destination))

    async def send_password_reset(self, destination: str, reset_link: str, ttl_seconds: int) -> None:
        if self._mail is None:
            raise DeliveryFailureError("Email service not configured")
        message = MessageSchema(
            subject=f"{self.app_name} - Password Reset",
            recipients=[destination],
            body=(
                f"<p>We received a request to reset your {self.app_name} password.</p>"
                f"<p><a href=\"{reset_link}\">Reset your password</a></p>"
                f"<p>The link expires in {_minutes(ttl_seconds)}. If you didn't request it, ignore this email.</p>"
            ),
            subtype=MessageType.html,
        )
        try:
            await self._mail.send_message(message)
        except Exception as exc:
            logger.error("Failed to send reset email to %s: %s", redact_email(destination), exc)
            raise DeliveryFailureError("Failed to send password reset email") from exc
        logger.info("Password reset email sent to: %s", redact_email(destination))


class SmsOTPSender:
    """SMS delivery through Twilio's Messages endpoint."""

    def __init__(self, config: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.app_name = config.APP_NAME
        self.account_sid = config.TWILIO_ACCOUNT_SID
        self.auth_token = config.TWILIO_AUTH_TOKEN
        self.from_number = config.TWILIO_FROM
        self.timeout = config.DELIVERY_TIMEOUT_SECONDS
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send(self, destination: str, code: str, ttl_seconds: int) -> None:
        if not self.is_configured:
            raise DeliveryFailureError("SMS service not configured")

        body = f"Your {self.app_name} verification code is: {code}. This code expires in {_minutes(ttl_seconds)}."
        url = TWILIO_MESSAGES_URL.format(sid=self.account_sid)
        data = {"To": destination, "From": self.from_number, "Body": body}
        try:
            if self._client is not None:
                response = await self._client.post(url, data=data, auth=(self.account_sid, self.auth_token))
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, data=data, auth=(self.account_sid, self.auth_token))
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Twilio rejected OTP SMS to %s: status=%s",
                redact_phone(destination),
                exc.response.status_code,
            )
            raise DeliveryFailureError("SMS provider rejected the message") from exc
        except httpx.HTTPError as exc:
            logger.error("Failed to reach SMS provider for %s: %s", redact_phone(destination), exc)
            raise DeliveryFailureError("SMS provider unreachable") from exc

        sid = None
        try:
            sid = response.json().get("sid")
        except ValueError:
            pass
        logger.info("OTP SMS sent to: %s, SID: %s", redact_phone(destination), sid)
