"""User service - handles registration, password authentication and account management"""

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from authgate.config import Settings
from authgate.core.exceptions import (
    AccountDeactivatedError,
    DatabaseError,
    DuplicateEmailError,
    InvalidCredentialsError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    ValidationError,
    WeakPasswordError,
)
from authgate.core.security import (
    generate_opaque_token,
    get_password_hash,
    hash_token,
    verify_password,
)
from authgate.core.timeutil import as_utc, utcnow
from authgate.models.user import User, default_preferences
from authgate.services.token_service import RefreshTokenLedger

logger = logging.getLogger(__name__)

PREFERENCE_THEMES = ("light", "dark", "system")
PREFERENCE_LANGUAGE = re.compile(r"^[a-z]{2}(-[A-Z]{2})?$")
PHONE_NUMBER = re.compile(r"^\+[1-9]\d{6,14}$")


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def validate_preferences(preferences: Dict[str, Any]) -> Dict[str, Any]:
    """
    Preferences are an open map; only the keys the application reads are checked.

    Raises:
        ValidationError: a known key carries a value of the wrong shape
    """
    if not isinstance(preferences, dict):
        raise ValidationError("Preferences must be an object")

    errors = {}
    theme = preferences.get("theme")
    if "theme" in preferences and theme not in PREFERENCE_THEMES:
        errors["theme"] = f"must be one of {', '.join(PREFERENCE_THEMES)}"
    if "notifications" in preferences and not isinstance(preferences["notifications"], bool):
        errors["notifications"] = "must be a boolean"
    language = preferences.get("language")
    if "language" in preferences and not (isinstance(language, str) and PREFERENCE_LANGUAGE.match(language)):
        errors["language"] = "must be a language code such as 'en' or 'en-US'"

    if errors:
        raise ValidationError("Invalid preferences", details=errors)
    return preferences


class UserService:
    """Service for user management"""

    def __init__(
        self,
        config: Settings,
        ledger: RefreshTokenLedger,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.password_min_length = config.PASSWORD_MIN_LENGTH
        self.reset_ttl = timedelta(minutes=config.PASSWORD_RESET_EXPIRE_MINUTES)
        self.ledger = ledger
        self._clock = clock or utcnow
        # compared against when the email is unknown so both paths pay for one bcrypt check
        self._dummy_hash = get_password_hash(generate_opaque_token(16))

    def _now(self) -> datetime:
        return self._clock()

    def check_password_strength(self, password: str) -> None:
        if len(password or "") < self.password_min_length:
            raise WeakPasswordError(
                f"Password must be at least {self.password_min_length} characters long"
            )
        if not re.search(r"[A-Za-z]", password) or not re.search(r"\d", password):
            raise WeakPasswordError("Password must contain at least one letter and one digit")
        if len(password.encode("utf-8")) > 72:
            raise WeakPasswordError("Password must be at most 72 bytes long")

    def register(
        self,
        db: Session,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        """
        Create a password-based account

        Args:
            db: Database session
            email: Login email, stored lower-cased
            password: Plain text password
            first_name: Optional first name
            last_name: Optional last name

        Returns:
            Created user
        """
        email = normalize_email(email)
        self.check_password_strength(password)

        if self.get_by_email(db, email) is not None:
            raise DuplicateEmailError()

        user = User(
            email=email,
            password_hash=get_password_hash(password),
            first_name=first_name,
            last_name=last_name,
            role="user",
            is_active=True,
            is_verified=False,
            preferences=default_preferences(),
        )
        try:
            db.add(user)
            db.commit()
        except IntegrityError:
            db.rollback()
            raise DuplicateEmailError()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Failed to register {email}: {exc}")
            raise DatabaseError("Failed to create user")
        db.refresh(user)

        logger.info(f"Registered user: {user.id} ({user.role})")
        return user

    def authenticate(self, db: Session, email: str, password: str) -> User:
        """
        Authenticate by email and password

        Unknown email, wrong password and password-less accounts all raise the
        same InvalidCredentialsError. A deactivated account is reported only
        after its password matched.
        """
        user = self.get_by_email(db, email)

        if user is None or not user.password_hash:
            verify_password(password or "", self._dummy_hash)
            raise InvalidCredentialsError()

        if not verify_password(password or "", user.password_hash):
            logger.info(f"Failed login for user: {user.id}")
            raise InvalidCredentialsError()

        if not user.is_active:
            raise AccountDeactivatedError()

        user.last_login = self._now()
        db.commit()
        logger.info(f"User authenticated: {user.id}")
        return user

    def get_by_id(self, db: Session, user_id: int) -> Optional[User]:
        return db.get(User, user_id)

    def get_by_email(self, db: Session, email: str) -> Optional[User]:
        email = normalize_email(email)
        if not email:
            return None
        return db.query(User).filter(User.email == email).first()

    def get_by_phone(self, db: Session, phone_number: str) -> Optional[User]:
        phone_number = (phone_number or "").strip()
        if not phone_number:
            return None
        return db.query(User).filter(User.phone_number == phone_number).first()

    def update_profile(
        self,
        db: Session,
        user: User,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> User:
        """Apply the provided fields; a new phone number must be verified again."""
        if first_name is not None:
            user.first_name = first_name.strip() or None
        if last_name is not None:
            user.last_name = last_name.strip() or None

        if phone_number is not None:
            phone_number = phone_number.strip() or None
            if phone_number and not PHONE_NUMBER.match(phone_number):
                raise ValidationError("Phone number must be in E.164 format, e.g. +15551234567")
            if phone_number != user.phone_number:
                if phone_number and self.get_by_phone(db, phone_number) is not None:
                    raise ResourceAlreadyExistsError("Phone number")
                user.phone_number = phone_number
                user.phone_verified = False
                user.phone_verified_at = None

        if preferences is not None:
            merged = dict(user.preferences or default_preferences())
            merged.update(validate_preferences(preferences))
            user.preferences = merged

        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise ResourceAlreadyExistsError("Phone number")
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Failed to update profile for user {user.id}: {exc}")
            raise DatabaseError("Failed to update profile")
        db.refresh(user)
        return user

    def change_password(self, db: Session, user: User, current_password: str, new_password: str) -> int:
        """
        Change password and end every other session

        Returns:
            Number of refresh tokens revoked
        """
        if not verify_password(current_password or "", user.password_hash):
            raise InvalidCredentialsError()
        self.check_password_strength(new_password)

        user.password_hash = get_password_hash(new_password)
        db.commit()
        revoked = self.ledger.revoke_all(db, user.id)
        logger.info(f"Password changed for user: {user.id}")
        return revoked

    def request_password_reset(self, db: Session, email: str) -> Optional[str]:
        """
        Store a reset token for the account, if there is one

        Returns:
            The raw token to send to the user, or None for an unknown or inactive email
        """
        user = self.get_by_email(db, email)
        if user is None or not user.is_active:
            return None

        token = generate_opaque_token()
        user.reset_password_token_hash = hash_token(token)
        user.reset_password_expires = self._now() + self.reset_ttl
        db.commit()
        logger.info(f"Password reset requested for user: {user.id}")
        return token

    def reset_password(self, db: Session, token: str, new_password: str) -> User:
        if not token:
            raise ValidationError("Invalid or expired reset token")

        user = (
            db.query(User)
            .filter(User.reset_password_token_hash == hash_token(token))
            .first()
        )
        if user is None or user.reset_password_expires is None:
            raise ValidationError("Invalid or expired reset token")
        if self._now() >= as_utc(user.reset_password_expires):
            raise ValidationError("Invalid or expired reset token")

        self.check_password_strength(new_password)
        user.password_hash = get_password_hash(new_password)
        user.reset_password_token_hash = None
        user.reset_password_expires = None
        db.commit()
        self.ledger.revoke_all(db, user.id)

        logger.info(f"Password reset for user: {user.id}")
        return user

    def set_active(self, db: Session, user_id: int, active: bool) -> User:
        """
        Admin activate/deactivate

        Refresh tokens are kept: rotation and the request gate refuse an
        inactive owner, and reactivation brings existing sessions back.
        """
        user = self.get_by_id(db, user_id)
        if user is None:
            raise ResourceNotFoundError("User")

        user.is_active = active
        db.commit()
        db.refresh(user)

        logger.info(f"User {user_id} {'activated' if active else 'deactivated'}")
        return user

    def delete_user(self, db: Session, user_id: int) -> None:
        """Hard delete; OTP challenges and refresh tokens go with the user."""
        user = self.get_by_id(db, user_id)
        if user is None:
            raise ResourceNotFoundError("User")

        try:
            db.delete(user)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Failed to delete user {user_id}: {exc}")
            raise DatabaseError("Failed to delete user")

        logger.info(f"Deleted user: {user_id}")
