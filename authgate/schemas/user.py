"""User and session schemas"""

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Any, Dict, Optional
from datetime import datetime
from enum import Enum


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys; snake_case is accepted on input too"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserRole(str, Enum):
    """User role enumeration"""
    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class UserCreate(CamelModel):
    """Registration schema"""
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)


class UserLogin(CamelModel):
    """User login schema"""
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class UserUpdate(CamelModel):
    """Profile update; omitted fields are left unchanged"""
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    phone_number: Optional[str] = Field(None, max_length=32)
    preferences: Optional[Dict[str, Any]] = None


class UserStatusUpdate(CamelModel):
    is_active: bool


class UserResponse(CamelModel):
    """User response schema"""
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str
    is_active: bool
    is_verified: bool
    phone_number: Optional[str] = None
    phone_verified: bool = False
    federated_provider: Optional[str] = None
    avatar_url: Optional[str] = None
    preferences: Dict[str, Any] = {}
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None


class RefreshTokenRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = None


class TokenResponse(CamelModel):
    """Rotated token pair"""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class AuthResponse(TokenResponse):
    """Token pair plus the signed-in user"""
    user: UserResponse


class ForgotPasswordRequest(CamelModel):
    email: str = Field(..., min_length=3, max_length=255)


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1, max_length=128)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)


class FederatedLinkRequest(CamelModel):
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)

    @field_validator("code", "state")
    @classmethod
    def strip_value(cls, v: str) -> str:
        return v.strip()
