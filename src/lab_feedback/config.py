"""Application configuration."""

import os
from urllib.parse import urlparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    supabase_url: str
    supabase_service_key: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    detector_base_url: str = "http://localhost:5001"
    public_base_url: str | None = None
    port: int = 3000
    upload_dir: str = "uploads"
    processed_subdir: str = "processed"
    detector_timeout_seconds: float = 30.0
    download_timeout_seconds: float = 60.0
    handshake_timeout_seconds: float = 10.0
    companion_resource_url: str = "https://mexle.org/circuit-guide"
    legacy_processing_events: bool = True
    log_level: str = "INFO"
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )

    @field_validator("public_base_url")
    @classmethod
    def _validate_public_base_url(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        cleaned = value.strip().rstrip("/")
        parsed = urlparse(cleaned)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("public_base_url must be an absolute http(s) URL")
        return cleaned

    @field_validator("detector_base_url")
    @classmethod
    def _strip_detector_base_url(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @property
    def is_production(self) -> bool:
        """Return true when running with production networking rules."""
        return self.environment == "production"


def development_base_urls(port: int) -> list[str]:
    """Ordered guesses for reaching this host from a sibling container."""
    return [
        f"http://host.docker.internal:{port}",
        f"http://172.17.0.1:{port}",
        f"http://localhost:{port}",
    ]
