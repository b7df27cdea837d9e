"""One-time passcode challenge model"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index, CheckConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from authgate.core.database import Base

OTP_CHANNELS = ("email", "sms")


class OTPChallenge(Base):
    """
    A single verification attempt bound to one user and one channel.

    Only the bcrypt hash of the code is stored. A challenge is live while it
    is unverified, not revoked and not expired; requesting a new one revokes
    the previous live challenge for the same user and channel.
    """

    __tablename__ = "otp_verifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), nullable=True)
    phone_number = Column(String(32), nullable=True)
    code_hash = Column(String(255), nullable=False)
    verification_type = Column(String(10), nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    revoked = Column(Boolean, default=False, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="otp_challenges")

    __table_args__ = (
        Index("idx_otp_user_type", "user_id", "verification_type"),
        CheckConstraint("verification_type IN ('email', 'sms')", name="chk_otp_type"),
        CheckConstraint(
            "(verification_type = 'email' AND email IS NOT NULL AND phone_number IS NULL) OR "
            "(verification_type = 'sms' AND phone_number IS NOT NULL AND email IS NULL)",
            name="chk_otp_destination",
        ),
        CheckConstraint("attempts >= 0", name="chk_otp_attempts"),
    )
