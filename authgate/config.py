"""Application configuration management"""

import json
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List
from urllib.parse import quote_plus

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

# Base directory: repository root
_BASE_DIR = Path(__file__).resolve().parent.parent


class DeliveryMode(str, Enum):
    """How OTP delivery failures are treated"""
    PROVIDER = "provider"
    LOGGED_FALLBACK = "logged_fallback"


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "AuthGate"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    FRONTEND_URL: str = "http://localhost:3000"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database (PostgreSQL)
    DATABASE_URL: str = ""
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "authgate_db"
    POSTGRES_USER: str = "authgate"
    POSTGRES_PASSWORD: str = "authgate"
    DATABASE_POOL_SIZE: int = 30
    DATABASE_MAX_OVERFLOW: int = 20

    # Token signing
    SECRET_KEY: str = ""
    ALGORITHM: str = "HS256"
    TOKEN_ISSUER: str = "authgate-api"
    TOKEN_AUDIENCE: str = "authgate-client"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 7 * 24 * 60
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30
    TOKEN_CLOCK_SKEW_SECONDS: int = 30

    # Passwords
    BCRYPT_ROUNDS: int = 12
    PASSWORD_MIN_LENGTH: int = 8
    PASSWORD_RESET_EXPIRE_MINUTES: int = 60

    # One-time passcodes
    OTP_LENGTH: int = 6
    OTP_EXPIRE_SECONDS: int = 180
    OTP_MAX_ATTEMPTS: int = 3
    OTP_DELIVERY_MODE: DeliveryMode = DeliveryMode.PROVIDER
    DELIVERY_TIMEOUT_SECONDS: float = 10.0

    # Email transport (SMTP)
    MAIL_SERVER: str = ""
    MAIL_PORT: int = 587
    MAIL_USERNAME: str = ""
    MAIL_PASSWORD: str = ""
    MAIL_FROM: str = ""
    MAIL_FROM_NAME: str = "AuthGate"
    MAIL_STARTTLS: bool = True
    MAIL_SSL_TLS: bool = False

    # SMS transport (Twilio)
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM: str = ""

    # Federated identity (Google OAuth2)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_CALLBACK_URL: str = "http://localhost:8000/api/v1/auth/federated/callback"
    FEDERATION_AUTO_LINK_BY_EMAIL: bool = True
    OAUTH_STATE_EXPIRE_SECONDS: int = 600

    # Rate Limiting (requests per window, per client)
    RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60
    AUTH_RATE_LIMIT: int = 10
    OTP_SEND_RATE_LIMIT: int = 5
    OTP_VERIFY_RATE_LIMIT: int = 10

    # Sweeper
    RUN_EMBEDDED_SWEEPER: bool = True
    SWEEP_INTERVAL_SECONDS: float = 3600.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:3000"]

    # Database initialization discipline
    DB_INIT_MODE: str = "migrate"  # migrate | create_all | off
    DB_REQUIRE_HEAD: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, value: Any) -> Any:
        """
        Accept JSON array or comma-separated origins from env.

        Examples:
            CORS_ORIGINS=["http://localhost:3000","http://example.com"]
            CORS_ORIGINS=http://localhost:3000,http://example.com
        """
        if not isinstance(value, str):
            return value

        raw = value.strip()
        if not raw:
            return []

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None

        if isinstance(parsed, str):
            return [parsed]
        if isinstance(parsed, list):
            return [str(origin).strip() for origin in parsed if str(origin).strip()]

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.ACCESS_TOKEN_EXPIRE_MINUTES * 60

    def get_log_file(self) -> str:
        p = self.LOG_FILE
        if not p or p.startswith(".."):
            return str(_BASE_DIR / "logs" / "app.log")
        return p

    def get_database_url(self) -> str:
        """
        Resolve database URL.

        Priority:
          1) Explicit DATABASE_URL
          2) Construct from POSTGRES_* parts with safe URL encoding
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL

        user = quote_plus(self.POSTGRES_USER)
        password = quote_plus(self.POSTGRES_PASSWORD)
        return (
            f"postgresql://{user}:{password}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
        """
        if not self.is_production:
            return

        insecure_secret_markers = {
            "",
            "change-me",
            "your-super-secret-key-change-this-in-production",
        }

        if self.SECRET_KEY in insecure_secret_markers or len(self.SECRET_KEY) < 32:
            raise ValueError(
                "Missing or weak SECRET_KEY in production. Without a stable key every restart "
                "invalidates all sessions. Use a strong key (e.g. `openssl rand -hex 32`)."
            )

        if self.OTP_DELIVERY_MODE == DeliveryMode.LOGGED_FALLBACK:
            raise ValueError(
                "OTP_DELIVERY_MODE=logged_fallback writes passcodes to the log and is not allowed in production."
            )

        if self.DEBUG:
            raise ValueError("DEBUG must be disabled in production.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
