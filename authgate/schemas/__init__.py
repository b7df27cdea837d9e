"""Pydantic schemas for API validation"""

from authgate.schemas.user import (
    UserCreate,
    UserLogin,
    UserUpdate,
    UserStatusUpdate,
    UserResponse,
    TokenResponse,
    AuthResponse,
    RefreshTokenRequest,
    LogoutRequest,
    ForgotPasswordRequest,
    ResetPasswordRequest,
    ChangePasswordRequest,
    FederatedLinkRequest,
)
from authgate.schemas.otp import SendEmailOTPRequest, SendSmsOTPRequest, OTPSentResponse, VerifyOTPRequest
from authgate.schemas.response import APIResponse, ErrorResponse, HealthResponse
from authgate.schemas.audit import AuditEventResponse

__all__ = [
    "UserCreate", "UserLogin", "UserUpdate", "UserStatusUpdate", "UserResponse",
    "TokenResponse", "AuthResponse", "RefreshTokenRequest", "LogoutRequest",
    "ForgotPasswordRequest", "ResetPasswordRequest", "ChangePasswordRequest", "FederatedLinkRequest",
    "SendEmailOTPRequest", "SendSmsOTPRequest", "OTPSentResponse", "VerifyOTPRequest",
    "AuditEventResponse",
    "APIResponse", "ErrorResponse", "HealthResponse",
]
