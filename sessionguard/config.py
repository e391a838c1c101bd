"""Application configuration management"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List, Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Base directory: repository root
_BASE_DIR = Path(__file__).resolve().parent.parent

_DEV_SQLITE_URL = f"sqlite:///{_BASE_DIR / 'sessionguard.db'}"

_SYMMETRIC_ALGORITHMS = {"HS256", "HS384", "HS512"}


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Application
    APP_NAME: str = "SessionGuard"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database
    DATABASE_URL: str = ""
    DATABASE_POOL_SIZE: int = 30
    DATABASE_MAX_OVERFLOW: int = 20

    # Access tokens
    JWT_ALG: Literal["HS256", "HS384", "HS512", "RS256", "RS384", "RS512"] = "HS256"
    JWT_SECRET: str = ""
    JWT_PRIVATE_KEY: str = ""
    JWT_PUBLIC_KEY: str = ""
    JWT_KID: str = ""
    JWT_ISS: str = "sessionguard"
    JWT_AUD: str = "sessionguard-clients"
    JWT_MIN_SECRET_LENGTH: int = 32
    ACCESS_TOKEN_TTL_SECONDS: int = 15 * 60
    ACCESS_TOKEN_MIN_TTL_SECONDS: int = 60
    ACCESS_TOKEN_MAX_TTL_SECONDS: int = 60 * 60
    ACCESS_TOKEN_LEEWAY_SECONDS: int = 60

    # Refresh tokens
    REFRESH_HASH_SECRET: str = ""
    REFRESH_TOKEN_TTL_SECONDS: int = 30 * 24 * 60 * 60
    REFRESH_TOKEN_MAX_TTL_SECONDS: int = 90 * 24 * 60 * 60
    REFRESH_TOKEN_BYTES: int = 32
    TOKEN_ISSUE_MAX_ATTEMPTS: int = 5
    MAX_REFRESH_TOKEN_FAMILY_SIZE: int = 50
    ROTATION_MODE: Literal["auto", "transactional", "best_effort"] = "auto"
    REFRESH_REUSE_GRACE_SECONDS: int = 0

    # Session listing
    SESSION_LIST_DEFAULT_LIMIT: int = 20
    SESSION_LIST_MAX_LIMIT: int = 100

    # Cookies
    COOKIE_SAMESITE: Literal["lax", "strict", "none"] = "lax"
    COOKIE_SECURE: bool = False
    COOKIE_DOMAIN: Optional[str] = None
    ACCESS_COOKIE_NAME: str = "access_token"
    REFRESH_COOKIE_NAME: str = "refresh_token"
    REFRESH_COOKIE_PATH: str = "/api/v1/auth"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:5173"]

    # Database initialization discipline
    DB_INIT_MODE: str = "migrate"  # migrate | create_all | off
    DB_REQUIRE_HEAD: bool = True

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, value: Any) -> Any:
        """
        Accept JSON array or comma-separated origins from env.

        Examples:
            CORS_ORIGINS=["http://localhost:5173","http://example.com"]
            CORS_ORIGINS=http://localhost:5173,http://example.com
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

    @field_validator("COOKIE_SAMESITE", mode="before")
    @classmethod
    def _lower_samesite(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _check_ttl_bounds(self) -> "Settings":
        if self.ACCESS_TOKEN_MIN_TTL_SECONDS <= 0:
            raise ValueError("ACCESS_TOKEN_MIN_TTL_SECONDS must be positive")
        if self.ACCESS_TOKEN_MAX_TTL_SECONDS < self.ACCESS_TOKEN_MIN_TTL_SECONDS:
            raise ValueError("ACCESS_TOKEN_MAX_TTL_SECONDS must be >= ACCESS_TOKEN_MIN_TTL_SECONDS")
        if self.REFRESH_TOKEN_TTL_SECONDS <= 0:
            raise ValueError("REFRESH_TOKEN_TTL_SECONDS must be positive")
        if self.TOKEN_ISSUE_MAX_ATTEMPTS < 1:
            raise ValueError("TOKEN_ISSUE_MAX_ATTEMPTS must be at least 1")
        if self.SESSION_LIST_MAX_LIMIT < 1:
            raise ValueError("SESSION_LIST_MAX_LIMIT must be at least 1")
        return self

    @property
    def uses_symmetric_signing(self) -> bool:
        return self.JWT_ALG in _SYMMETRIC_ALGORITHMS

    def get_log_file(self) -> str:
        """Log file path, empty when logging to stderr only"""
        p = self.LOG_FILE
        if p and not Path(p).is_absolute():
            return str(_BASE_DIR / p)
        return p

    def get_database_url(self) -> str:
        """
        Resolve database URL.

        Falls back to a SQLite file next to the package for local development.
        """
        return self.DATABASE_URL or _DEV_SQLITE_URL

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ConfigurationError: If insecure defaults are detected.
        """
        from sessionguard.core.exceptions import ConfigurationError

        if self.ENVIRONMENT.lower() != "production":
            return

        insecure_secret_markers = {
            "",
            "change-me",
            "dev-secret-key-change-in-production",
            "your-super-secret-key-change-this-in-production",
        }

        if self.uses_symmetric_signing and (
            self.JWT_SECRET in insecure_secret_markers
            or len(self.JWT_SECRET) < self.JWT_MIN_SECRET_LENGTH
        ):
            raise ConfigurationError(
                "Insecure JWT_SECRET for production. Use a strong key (e.g. `openssl rand -hex 32`)."
            )

        if self.REFRESH_HASH_SECRET in insecure_secret_markers or len(self.REFRESH_HASH_SECRET) < 32:
            raise ConfigurationError(
                "Insecure REFRESH_HASH_SECRET for production. Use a strong key distinct from JWT_SECRET."
            )

        if self.uses_symmetric_signing and self.REFRESH_HASH_SECRET == self.JWT_SECRET:
            raise ConfigurationError("REFRESH_HASH_SECRET must differ from JWT_SECRET.")

        if not self.COOKIE_SECURE:
            raise ConfigurationError("COOKIE_SECURE must be enabled in production.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
