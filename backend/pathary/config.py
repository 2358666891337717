"""Application configuration management"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

# Base directory: backend/
_BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "Pathary"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database
    DATABASE_URL: str = ""
    SQLITE_PATH: str = ""
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20

    # Security
    SECRET_KEY: str = "dev-secret-key-change-in-production-use-openssl-rand-hex-32"
    BCRYPT_ROUNDS: int = 12

    # Authentication tokens
    AUTH_TOKEN_EXPIRE_DAYS: int = 1
    REMEMBER_ME_EXPIRE_DAYS: int = 3650
    AUTH_COOKIE_NAME: str = "id"
    API_TOKEN_HEADER: str = "X-Pathary-Token"
    SESSION_COOKIE_NAME: str = "pathary_session"
    SESSION_IDLE_TIMEOUT_SECONDS: int = 86400
    CSRF_HEADER_NAME: str = "X-CSRF-Token"
    WEB_CLIENT_NAME: str = "Pathary Web"

    # Second factor
    TOTP_ISSUER: str = "Pathary"
    TOTP_VALID_WINDOW: int = 1
    RECOVERY_CODE_COUNT: int = 10
    RECOVERY_CODE_LENGTH: int = 10

    # Trusted devices
    TRUSTED_DEVICE_EXPIRE_DAYS: int = 30
    MAX_TRUSTED_DEVICES_PER_USER: int = 10
    TRUSTED_DEVICE_COOKIE_NAME: str = "pathary_trusted_device"

    # Security audit log
    SECURITY_AUDIT_RETENTION_DAYS: int = 90

    # Rate Limiting
    RATE_LIMIT_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    RATE_LIMIT_PASSWORD_CHANGE_MAX: int = 5
    RATE_LIMIT_PASSWORD_CHANGE_WINDOW: int = 300
    RATE_LIMIT_USER_CREATE_MAX: int = 10
    RATE_LIMIT_USER_CREATE_WINDOW: int = 60
    RATE_LIMIT_LOGIN_MAX: int = 10
    RATE_LIMIT_LOGIN_WINDOW: int = 60
    RATE_LIMIT_DEFAULT_MAX: int = 10
    RATE_LIMIT_DEFAULT_WINDOW: int = 300

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:3000"]

    # Proxies whose X-Forwarded-For / X-Forwarded-Proto headers are honoured
    TRUSTED_PROXIES: Annotated[List[str], NoDecode] = ["127.0.0.1"]

    # Database initialization discipline
    DB_INIT_MODE: str = "migrate"  # migrate | create_all | off
    DB_REQUIRE_HEAD: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("CORS_ORIGINS", "TRUSTED_PROXIES", mode="before")
    @classmethod
    def _parse_host_list(cls, value: Any) -> Any:
        """
        Accept a JSON array or a comma-separated list from env.

        Examples:
            CORS_ORIGINS=["http://localhost:3000","http://example.com"]
            TRUSTED_PROXIES=127.0.0.1,10.0.0.0/8
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

    @field_validator("BCRYPT_ROUNDS")
    @classmethod
    def _check_bcrypt_rounds(cls, value: int) -> int:
        if value < 4 or value > 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31")
        return value

    def get_log_file(self) -> str:
        p = self.LOG_FILE
        if not p or p.startswith(".."):
            return str(_BASE_DIR.parent / "logs" / "app.log")
        return p

    def get_database_url(self) -> str:
        """
        Resolve database URL.

        Priority:
          1) Explicit DATABASE_URL
          2) SQLite file at SQLITE_PATH (defaults to storage/pathary.sqlite)
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL

        path = self.SQLITE_PATH or str(_BASE_DIR.parent / "storage" / "pathary.sqlite")
        return f"sqlite:///{path}"

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
        """
        if self.ENVIRONMENT.lower() != "production":
            return

        insecure_secret_markers = {
            "",
            "dev-secret-key-change-in-production-use-openssl-rand-hex-32",
            "change-me",
        }

        if self.SECRET_KEY in insecure_secret_markers or len(self.SECRET_KEY) < 32:
            raise ValueError(
                "Insecure SECRET_KEY for production. Use a strong key (e.g. `openssl rand -hex 32`)."
            )

        if self.BCRYPT_ROUNDS < 10:
            raise ValueError("BCRYPT_ROUNDS below 10 is not allowed in production.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
