"""Central configuration for the camrelay service."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[1]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class RelayTimings(BaseModel):
    """Timing knobs for the relay core (seconds)."""
    heartbeat_interval: float = Field(30.0, description="Period between liveness probes")
    capture_timeout: float = Field(6.0, description="Default deadline for a single capture")
    command_timeout: float = Field(10.0, description="Default deadline for tokenized commands")
    subscriber_write_timeout: float = Field(0.5, description="Max time a single viewer write may take")
    result_retention: float = Field(30.0, description="How long terminal command results stay readable")
    frame_cache_idle: float = Field(3600.0, description="Drop cached frames of devices offline this long")
    close_timeout: float = Field(2.0, description="Max time spent closing a replaced transport")


class AuthSettings(BaseModel):
    """Credential and OTP configuration."""
    session_ttl_seconds: int = Field(30 * 60, description="Lifetime of an issued viewer session")
    otp_ttl_seconds: int = Field(5 * 60, description="Lifetime of a mailed OTP code")
    otp_digits: int = Field(6, description="Number of digits in an OTP code")
    force_reauth: bool = Field(False, description="Require a fresh OTP on every start request")
    cookie_name: str = Field("relay_session", description="Cookie carrying the session credential")


class Settings(BaseSettings):
    """Environment-driven settings for the relay."""

    # HTTP Server
    relay_host: str = Field("0.0.0.0", description="Host interface for the FastAPI server")
    relay_port: int = Field(10000, description="Port for the FastAPI server")

    # Token service
    jwt_secret: str = Field("change-me", description="HS256 secret used to sign session credentials")
    jwt_algorithm: str = Field("HS256", description="Signing algorithm for session credentials")

    # Notification sender
    sendgrid_api_key: Optional[str] = Field(None, description="SendGrid API key; log-only sender when unset")
    sendgrid_api_url: str = Field("https://api.sendgrid.com", description="SendGrid REST base URL")
    from_email: str = Field("relay@localhost", description="Sender address for OTP mail")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    timings: RelayTimings = Field(default_factory=RelayTimings, description="Relay core timings")
    auth: AuthSettings = Field(default_factory=AuthSettings, description="Credential and OTP settings")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_level(cls, value: object) -> object:
        if isinstance(value, str):
            parsed = value.strip().upper()
            if parsed not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
                raise ValueError("LOG_LEVEL must be a standard logging level name")
            return parsed
        return value

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
