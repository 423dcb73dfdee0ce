"""Configuration module using Pydantic Settings."""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kado_proxy.auth.credentials import AppIdentity


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # GitHub App identity (all optional; empty means pass-through auth)
    github_app_id: str = ""
    github_app_private_key: str = ""
    github_installation_id: int = 0

    # Upstream
    upstream_url: str = "https://api.github.com"

    # Admission gate (requests per window)
    rate_limit_requests: int = 5000
    rate_limit_window_seconds: float = 3600.0
    rate_limit_burst: int = 1
    admission_timeout_seconds: float | None = None  # None = wait for a slot

    # HTTP Client
    http_timeout_connect: float = 10.0
    http_timeout_read: float = 30.0

    # Logging
    log_level: str = "INFO"

    # Listener
    host: str = "0.0.0.0"
    port: int = 8443
    tls_cert_file: str | None = None
    tls_key_file: str | None = None

    @field_validator("github_app_private_key")
    @classmethod
    def _unescape_newlines(cls, value: str) -> str:
        # Single-line env values often carry the PEM with literal "\n"
        if "\\n" in value and "\n" not in value:
            return value.replace("\\n", "\n")
        return value

    @field_validator("upstream_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    def app_identity(self) -> AppIdentity:
        """Build the App identity used for credential minting."""
        return AppIdentity(
            app_id=self.github_app_id,
            private_key=self.github_app_private_key.encode("utf-8"),
            installation_id=self.github_installation_id,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
