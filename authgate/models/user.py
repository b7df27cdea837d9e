"""User model"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, Index, CheckConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from authgate.core.database import Base

USER_ROLES = ("user", "admin", "super_admin")


def default_preferences() -> dict:
    return {"theme": "dark", "notifications": True, "language": "en"}


class User(Base):
    """User model for authentication and authorization"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    role = Column(String(20), default="user", nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)

    phone_number = Column(String(32), unique=True, nullable=True)
    phone_verified = Column(Boolean, default=False, nullable=False)
    phone_verified_at = Column(DateTime(timezone=True), nullable=True)

    federated_provider = Column(String(32), nullable=True)
    federated_id = Column(String(255), unique=True, nullable=True)
    federated_email = Column(String(255), nullable=True)
    avatar_url = Column(String(500), nullable=True)

    preferences = Column(JSON, default=default_preferences, nullable=False)

    reset_password_token_hash = Column(String(64), nullable=True, index=True)
    reset_password_expires = Column(DateTime(timezone=True), nullable=True)

    last_login = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    otp_challenges = relationship("OTPChallenge", back_populates="user", cascade="all, delete-orphan")
    refresh_tokens = relationship("RefreshToken", back_populates="user", cascade="all, delete-orphan")
    audit_events = relationship("AuditEvent", back_populates="user")

    __table_args__ = (
        CheckConstraint(
            "password_hash IS NOT NULL OR federated_id IS NOT NULL",
            name="chk_users_reachable",
        ),
        CheckConstraint(
            "role IN ('user', 'admin', 'super_admin')",
            name="chk_users_role",
        ),
        Index('idx_users_is_active', 'is_active'),
    )

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"

    @property
    def display_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.email
