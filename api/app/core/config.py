import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Environment settings (declared first so later validators can read it)
    ENVIRONMENT: str = "development"

    # API settings
    DEBUG: bool = False
    PROJECT_NAME: str = "WhatsApp Gateway"
    PROJECT_VERSION: str = "1.0.0"
    HOST: str = "127.0.0.1"
    PORT: int = 3000
    LOG_LEVEL: str = "INFO"

    # Shared secret expected in the x-api-password header (or "password" body field)
    API_PASSWORD: str = ""

    # CORS settings - accepts string or list, normalized to list[str] by validator
    CORS_ORIGINS: str | list[str] = Field(
        default="*",
        validation_alias=AliasChoices("CORS_ORIGINS", "ALLOWED_ORIGINS"),
    )

    # Session settings
    AUTH_DIR: str = "auth_info"  # Credential directory, survives restarts
    SESSION_PROVIDER: str = ""  # "package.module:factory" building a SessionProvider
    PROVIDER_LOG_LEVEL: str = "WARNING"  # Discards provider protocol chatter
    RECONNECT_DELAY_SECONDS: float = 3.0
    DEFAULT_DOMAIN: str = "s.whatsapp.net"
    CREDENTIAL_LOCK_TIMEOUT_SECONDS: float = 10.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("LOG_LEVEL", "PROVIDER_LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize log level names and reject unknown ones.

        Args:
            v: Log level name (case-insensitive)

        Returns:
            Upper-cased log level name

        Raises:
            ValueError: If the level is not a standard logging level
        """
        level = str(v).strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("RECONNECT_DELAY_SECONDS", "CREDENTIAL_LOCK_TIMEOUT_SECONDS")
    @classmethod
    def validate_positive_seconds(cls, v: float, info: ValidationInfo) -> float:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be greater than 0, got {v}")
        return v

    @field_validator("DEFAULT_DOMAIN")
    @classmethod
    def validate_default_domain(cls, v: str) -> str:
        v = v.strip().lstrip("@")
        if not v:
            raise ValueError("DEFAULT_DOMAIN must not be empty")
        return v

    @field_validator("SESSION_PROVIDER")
    @classmethod
    def validate_session_provider(cls, v: str) -> str:
        """Check the provider import path has the "module:attribute" form.

        An empty value is allowed: the gateway starts but never connects.
        """
        v = v.strip()
        if not v:
            return v
        module_path, sep, attribute = v.partition(":")
        if not sep or not module_path or not attribute:
            raise ValueError(
                f"SESSION_PROVIDER must look like 'package.module:factory', got '{v}'"
            )
        return v

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        """Normalize CORS_ORIGINS to list of origins.

        Accepts either a comma-separated string or a list of strings.
        An empty value means every origin is allowed.

        Args:
            v: CORS origins as string (comma-separated), list of strings, or "*" for all

        Returns:
            List of CORS origins with whitespace trimmed and empty entries removed
        """
        if isinstance(v, list):
            origins = [
                origin.strip()
                for origin in v
                if isinstance(origin, str) and origin.strip()
            ]
            return origins or ["*"]

        if isinstance(v, str):
            if v.strip() in {"", "*"}:
                return ["*"]
            return [origin.strip() for origin in v.split(",") if origin.strip()]

        # Fallback for unexpected types: fail-closed (deny all origins)
        return []

    @classmethod
    def _is_production(cls, info: ValidationInfo) -> bool:
        """Check if ENVIRONMENT indicates production.

        Args:
            info: Validation info containing other field values

        Returns:
            True if environment is production, False otherwise
        """
        raw_env = info.data.get("ENVIRONMENT", "development")
        environment = str(raw_env).strip().lower()
        if environment in {"prod"}:
            environment = "production"
        return environment == "production"

    @field_validator("CORS_ORIGINS")
    @classmethod
    def validate_cors_in_production(cls, v: list[str], info) -> list[str]:
        """Reject wildcard CORS in production environments."""
        if cls._is_production(info) and v == ["*"]:
            raise ValueError("CORS wildcard '*' not allowed in production")

        return v

    @field_validator("API_PASSWORD")
    @classmethod
    def validate_api_password_in_production(cls, v: str, info) -> str:
        """Ensure API_PASSWORD is set in production environments.

        Outside production an empty password is allowed; protected routes
        then answer with a configuration error instead of accepting requests.
        """
        v = v.strip()
        if cls._is_production(info) and not v:
            raise ValueError("API_PASSWORD must be set in production")
        return v

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Make paths absolute
        self.AUTH_DIR = os.path.abspath(self.AUTH_DIR)

    @property
    def AUTH_DIR_PATH(self) -> Path:
        """Credential directory as a Path."""
        return Path(self.AUTH_DIR)


# Thread-safe lazy initialization using lru_cache
@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached application settings instance with lazy initialization.

    Settings are only created once on first access, then cached for subsequent calls.
    This prevents module-level side effects and allows testing without environment variables.

    Returns:
        Settings: Application settings object
    """
    return Settings()


def reset_settings() -> None:
    """Reset the cached settings instance.

    Useful for testing when you need to reload settings with different values.
    """
    get_settings.cache_clear()
