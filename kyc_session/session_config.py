"""
session_config.py - Centralised configuration for the KYC session client

Values are read from KYC_* environment variables or a local .env file.
"""
import logging

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SessionSettings(BaseSettings):
    # Identity backend
    API_URL: str = "http://localhost:8080"
    API_PREFIX: str = "/api"
    REQUEST_TIMEOUT: float = 10.0  # seconds, applied by the HTTP transport

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="KYC_", env_file=".env", extra="ignore")

    @field_validator("API_URL")
    @classmethod
    def _check_api_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("API_URL must start with http:// or https://")
        return value.rstrip("/")

    @field_validator("REQUEST_TIMEOUT")
    @classmethod
    def _check_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("REQUEST_TIMEOUT must be positive")
        return value

    @property
    def api_base_url(self) -> str:
        """Backend URL including the API prefix, e.g. http://localhost:8080/api"""
        prefix = self.API_PREFIX.strip("/")
        return f"{self.API_URL}/{prefix}" if prefix else self.API_URL


def configure_logging(level: str = "INFO") -> None:
    """Apply the root logging configuration used by the session components"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


settings = SessionSettings()
