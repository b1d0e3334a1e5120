"""Application configuration management."""

import os
import secrets
from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import make_url


BACKEND_ROOT = Path(__file__).resolve().parents[1]
PROJECT_ROOT = BACKEND_ROOT.parent
STORAGE_ROOT = PROJECT_ROOT / "storage"
DEFAULT_SECRET_KEY = "dev-secret-key-change-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    environment: Literal["development", "production", "testing"] = "development"

    # Database
    database_url: str = "sqlite+aiosqlite:///./vidscribe.db"

    # Security
    secret_key: str = DEFAULT_SECRET_KEY
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 1440  # 24 hours
    internal_api_key: str | None = None

    # Storage
    media_storage_path: str = str(STORAGE_ROOT / "media")
    retain_audio: bool = False

    # Audio extraction (Cobalt-compatible service)
    cobalt_api_url: str = "https://api.cobalt.tools"
    cobalt_api_key: str | None = None
    cobalt_timeout_seconds: float = 60.0
    download_max_attempts: int = 3
    download_retry_base_delay_seconds: float = 2.0

    # Speech-to-text
    gemini_api_key: str | None = None
    gemini_api_base: str = "https://generativelanguage.googleapis.com"
    openai_api_key: str | None = None
    whisper_api_url: str = "https://api.openai.com/v1/audio/transcriptions"
    stt_models: str = (
        "gemini:gemini-3-flash-preview,"
        "gemini:gemini-2.5-flash-lite,"
        "gemini:gemini-3-pro-preview"
    )
    stt_max_attempts: int = 3
    stt_retry_base_delay_seconds: float = 1.0
    stt_inline_max_bytes: int = 20 * 1024 * 1024
    stt_max_audio_bytes: int = 520 * 1024 * 1024
    stt_staging_poll_interval_seconds: float = 2.0
    stt_staging_timeout_seconds: float = 600.0
    stt_request_timeout_seconds: float = 300.0

    # Chunking (caller-side split for very large inputs)
    chunk_threshold_bytes: int = 200 * 1024 * 1024
    chunk_duration_seconds: int = 1800

    # Credit ledger
    entitled_tiers: str = "pro"
    pro_transcription_minutes: int = 120
    topup_package_minutes: int = 60

    # Job execution
    max_concurrent_jobs: int = 3
    job_lease_seconds: int = 900
    lease_check_interval_seconds: int = 30
    status_poll_interval_seconds: float = 2.0

    # Server
    host: str = "0.0.0.0"
    port: int = 8100
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=(".env.test", ".env"), case_sensitive=False)

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def stt_model_candidates(self) -> list[tuple[str, str]]:
        """Parse the model cascade into (provider, model) pairs, in order."""
        candidates = []
        for item in self.stt_models.split(","):
            item = item.strip()
            if not item:
                continue
            provider, _, model = item.partition(":")
            if not model:
                provider, model = "gemini", provider
            candidates.append((provider.strip().lower(), model.strip()))
        return candidates

    @property
    def entitled_tier_set(self) -> set[str]:
        return {tier.strip().lower() for tier in self.entitled_tiers.split(",") if tier.strip()}

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_testing(self) -> bool:
        """Check if running in testing environment."""
        env_var = os.getenv("ENVIRONMENT", "").lower() == "testing"
        pytest_flag = bool(os.getenv("PYTEST_CURRENT_TEST"))
        return self.environment == "testing" or env_var or pytest_flag

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str, info) -> str:
        """Validate secret key is secure in production."""
        env = info.data.get("environment", "development")
        if env == "production" and v == DEFAULT_SECRET_KEY:
            raise ValueError(
                "SECRET_KEY must be changed from default value in production. "
                "Generate a secure key with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
            )
        if env == "production" and len(v) < 32:
            raise ValueError(
                "SECRET_KEY must be at least 32 characters in production for security. "
                f"Current length: {len(v)}"
            )
        return v

    @field_validator("stt_max_attempts", "download_max_attempts", "max_concurrent_jobs")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @model_validator(mode="after")
    def validate_storage_paths(self) -> "Settings":
        """Ensure storage directories exist."""
        Path(self.media_storage_path).mkdir(parents=True, exist_ok=True)
        return self

    @model_validator(mode="after")
    def normalize_database_path(self) -> "Settings":
        """Ensure SQLite URLs point to backend/ regardless of CWD."""
        try:
            url = make_url(self.database_url)
        except Exception:
            return self

        if not url.get_backend_name().startswith("sqlite"):
            return self

        db_path = url.database
        if not db_path or db_path == ":memory:":
            return self

        path_obj = Path(db_path)
        if not path_obj.is_absolute():
            abs_path = (BACKEND_ROOT / path_obj).resolve()
            url = url.set(database=str(abs_path))
            self.database_url = url.render_as_string(hide_password=False)
        return self

    def generate_secure_secret(self) -> str:
        """Generate a cryptographically secure secret key."""
        return secrets.token_urlsafe(32)


# Global settings instance
settings = Settings()
if os.getenv("PYTEST_CURRENT_TEST"):
    settings.environment = "testing"
if settings.is_testing:
    settings.environment = "testing"
    if not settings.database_url.startswith("sqlite+aiosqlite"):
        settings.database_url = "sqlite+aiosqlite:///./vidscribe.db"
