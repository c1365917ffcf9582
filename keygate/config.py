"""
Configuration module for the keygate proxy.

This module uses Pydantic Settings to load and validate environment variables
for the upstream target, the listening socket, the accepted API keys and the
outbound timeouts.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import FrozenSet, Optional

import httpx
from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when the process cannot start with the current configuration"""
    pass


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The instance is frozen: it is built once at startup and handed to the
    application factory, requests never read the environment again.
    """

    # =========================================================================
    # Upstream Target
    # =========================================================================

    TARGET_HOST: str = Field(
        default="localhost",
        description="Host of the upstream server requests are forwarded to",
        min_length=1,
    )

    TARGET_PORT: int = Field(
        default=11434,
        description="Port of the upstream server",
        ge=1,
        le=65535,
    )

    # =========================================================================
    # Listening Socket
    # =========================================================================

    HOST: str = Field(
        default="0.0.0.0",
        description="Interface to bind the proxy server",
    )

    PORT: int = Field(
        default=8080,
        description="Port to bind the proxy server",
        ge=1,
        le=65535,
    )

    # =========================================================================
    # Credentials
    # =========================================================================

    API_KEY: Optional[str] = Field(
        None,
        description="Single accepted key (single-key mode)",
    )

    API_KEYS: Optional[str] = Field(
        None,
        description="Comma-separated list of accepted keys (multi-key mode)",
    )

    # =========================================================================
    # Outbound Timeouts (seconds, 0 disables the limit)
    # =========================================================================

    UPSTREAM_CONNECT_TIMEOUT: float = Field(default=10.0, ge=0)
    UPSTREAM_READ_TIMEOUT: float = Field(default=300.0, ge=0)
    UPSTREAM_WRITE_TIMEOUT: float = Field(default=300.0, ge=0)

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def accepted_keys(self) -> FrozenSet[str]:
        """
        Every key a caller may present after ``Bearer``.

        API_KEYS entries are stripped of surrounding whitespace and empty
        entries are dropped; API_KEY, when set, is added as is.
        """
        keys = set()
        if self.API_KEYS:
            keys.update(key.strip() for key in self.API_KEYS.split(","))
        if self.API_KEY:
            keys.add(self.API_KEY)
        keys.discard("")
        return frozenset(keys)

    @property
    def auth_mode(self) -> str:
        """``"multi"`` when API_KEYS is configured, ``"single"`` otherwise."""
        return "multi" if self.API_KEYS is not None else "single"

    @property
    def target_base_url(self) -> str:
        return f"http://{self.TARGET_HOST}:{self.TARGET_PORT}"

    @property
    def upstream_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self.UPSTREAM_CONNECT_TIMEOUT or None,
            read=self.UPSTREAM_READ_TIMEOUT or None,
            write=self.UPSTREAM_WRITE_TIMEOUT or None,
            pool=None,
        )

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        v = v.upper()
        if v not in allowed_levels:
            raise ValueError(
                f"LOG_LEVEL must be one of {allowed_levels}, got: {v}"
            )

        return v

    @model_validator(mode="after")
    def validate_credentials(self) -> "Settings":
        """
        Refuse to build settings without at least one usable key.

        Raises:
            ValueError: If neither API_KEY nor API_KEYS yields a key
        """
        if not self.accepted_keys:
            if self.API_KEYS is not None:
                raise ValueError("API_KEYS must contain at least one key")
            raise ValueError("API_KEY is not set")

        return self


# =============================================================================
# Settings Loading
# =============================================================================

def load_settings(**overrides) -> Settings:
    """
    Build a Settings instance, turning validation failures into a
    ConfigurationError carrying a readable message.

    Args:
        overrides: Field values that take precedence over the environment

    Returns:
        Validated Settings instance

    Raises:
        ConfigurationError: If required configuration is missing or invalid
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        messages = [
            f"{'.'.join(str(part) for part in error['loc']) or 'settings'}: {error['msg']}"
            for error in e.errors()
        ]
        raise ConfigurationError("; ".join(messages)) from e


@lru_cache()
def get_settings() -> Settings:
    """
    Get or create the process-wide Settings instance.

    Cached so the environment is read only once during the process lifetime.

    Raises:
        ConfigurationError: If required environment variables are missing
                            or invalid.
    """
    return load_settings()
