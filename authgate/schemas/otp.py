"""One-time passcode schemas"""

from typing import Optional

from pydantic import EmailStr, Field, field_validator, model_validator

from authgate.schemas.user import CamelModel


class SendEmailOTPRequest(CamelModel):
    email: EmailStr


class SendSmsOTPRequest(CamelModel):
    phone_number: str = Field(..., min_length=7, max_length=32)

    @field_validator("phone_number")
    @classmethod
    def strip_phone(cls, v: str) -> str:
        return v.strip()


class OTPSentResponse(CamelModel):
    success: bool = True
    message: str
    expires_in: int


class VerifyOTPRequest(CamelModel):
    """The destination field must match the verification type"""
    otp_code: str = Field(..., min_length=4, max_length=10, pattern=r"^\d+$")
    verification_type: str = Field(..., pattern=r"^(email|sms)$")
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = Field(None, max_length=32)

    @model_validator(mode="after")
    def check_destination(self):
        if self.verification_type == "email" and not self.email:
            raise ValueError("email is required for email verification")
        if self.verification_type == "sms" and not self.phone_number:
            raise ValueError("phoneNumber is required for sms verification")
        return self
