"""Database models"""

from authgate.models.user import User
from authgate.models.otp import OTPChallenge
from authgate.models.security import RefreshToken
from authgate.models.audit import AuditEvent

__all__ = ["User", "OTPChallenge", "RefreshToken", "AuditEvent"]
