"""Custom exception classes for the application"""

from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    code = "internal_error"

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Validation Errors
class ValidationError(BaseAPIException):
    """Validation error"""
    code = "validation_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=400, details=details)


class WeakPasswordError(ValidationError):
    """Password does not meet the strength policy"""
    code = "weak_password"


class BusinessLogicError(BaseAPIException):
    """Business logic error"""
    code = "bad_request"

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class DuplicateEmailError(BusinessLogicError):
    """Email already registered"""
    code = "duplicate_email"

    def __init__(self):
        super().__init__("User with this email already exists")


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    code = "authentication_failed"

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, status_code=401)


class InvalidCredentialsError(AuthenticationError):
    """Invalid email or password"""
    code = "invalid_credentials"

    def __init__(self):
        super().__init__("Invalid credentials")


class MissingTokenError(AuthenticationError):
    """No bearer token on the request"""
    code = "missing_token"

    def __init__(self):
        super().__init__("Access token required")


class TokenVerificationError(AuthenticationError):
    """Signed token failed verification"""
    code = "invalid_token"


class TokenExpiredError(TokenVerificationError):
    """JWT token has expired"""
    code = "token_expired"

    def __init__(self):
        super().__init__("Token has expired")


class TokenNotYetValidError(TokenVerificationError):
    """JWT token is not valid yet"""
    code = "token_not_yet_valid"

    def __init__(self):
        super().__init__("Token is not yet valid")


class TokenMalformedError(TokenVerificationError):
    """JWT token is malformed or its signature/claims do not check out"""
    code = "token_malformed"

    def __init__(self, message: str = "Malformed token"):
        super().__init__(message)


class TokenInvalidError(AuthenticationError):
    """JWT token is invalid"""
    code = "invalid_token"

    def __init__(self):
        super().__init__("Invalid token")


class InvalidTokenTypeError(AuthenticationError):
    """Token of the wrong kind was presented"""
    code = "invalid_token_type"

    def __init__(self):
        super().__init__("Invalid token type")


class UserNotFoundError(AuthenticationError):
    """Token subject no longer exists"""
    code = "user_not_found"

    def __init__(self):
        super().__init__("User not found")


class AccountDeactivatedError(AuthenticationError):
    """Account has been deactivated"""
    code = "account_deactivated"

    def __init__(self):
        super().__init__("Account is deactivated")


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token unknown, revoked or expired"""
    code = "invalid_or_expired"

    def __init__(self, message: str = "Invalid or expired refresh token"):
        super().__init__(message)


class RefreshTokenRaceLostError(InvalidRefreshTokenError):
    """Refresh token was rotated by a concurrent request"""
    code = "refresh_conflict"

    def __init__(self):
        super().__init__("Refresh token was already used")
        self.status_code = 409


class UserInactiveOrMissingError(AuthenticationError):
    """Refresh token owner deleted or deactivated"""
    code = "user_inactive_or_missing"

    def __init__(self):
        super().__init__("User not found or inactive")


class FederationFailedError(AuthenticationError):
    """Third-party sign-in could not be completed"""
    code = "federation_failed"

    def __init__(self, message: str = "Federated sign-in failed"):
        super().__init__(message)


# One-time passcode errors
class OTPInvalidOrExpiredError(BaseAPIException):
    """No live challenge matches the submitted code"""
    code = "otp_invalid_or_expired"

    def __init__(self):
        super().__init__("Invalid or expired OTP code", status_code=400)


class OTPTooManyAttemptsError(BaseAPIException):
    """Challenge locked after too many failed attempts"""
    code = "otp_too_many_attempts"

    def __init__(self):
        super().__init__("Too many failed attempts. Please request a new OTP.", status_code=400)


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    code = "forbidden"

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    code = "not_found"

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404)


class ResourceAlreadyExistsError(BaseAPIException):
    """Resource already exists"""
    code = "conflict"

    def __init__(self, resource: str):
        super().__init__(f"{resource} already exists", status_code=409)


# System Errors
class DatabaseError(BaseAPIException):
    """Database operation failed"""
    code = "database_error"

    def __init__(self, message: str = "Database operation failed"):
        super().__init__(message, status_code=500)


class DeliveryFailureError(BaseAPIException):
    """Email or SMS provider unreachable or rejected the message"""
    code = "delivery_failed"

    def __init__(self, message: str = "Failed to deliver verification code"):
        super().__init__(message, status_code=502)


class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    code = "rate_limited"

    def __init__(self, message: str = "Rate limit exceeded. Please try again later."):
        super().__init__(message, status_code=429)
