"""Application startup validation and health checks."""

import logging
import shutil
from pathlib import Path

from vidscribe.config import DEFAULT_SECRET_KEY, settings
from vidscribe.database import Base, engine

# Import models so metadata is populated for the create_all guardrail
from vidscribe import models  # noqa: F401

logger = logging.getLogger("vidscribe.startup")

_PROVIDER_KEYS = {
    "gemini": ("GEMINI_API_KEY", lambda: settings.gemini_api_key),
    "whisper": ("OPENAI_API_KEY", lambda: settings.openai_api_key),
}


async def ensure_core_tables() -> None:
    """Guardrail: create any missing tables. Idempotent."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)


def validate_configuration() -> list[str]:
    """Validate application configuration.

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []

    if settings.is_production:
        if settings.secret_key == DEFAULT_SECRET_KEY:
            errors.append("SECRET_KEY is still set to default value in production.")
        elif len(settings.secret_key) < 32:
            errors.append(
                f"SECRET_KEY is too short ({len(settings.secret_key)} chars). "
                "Use at least 32 characters in production."
            )

        origins_lower = settings.cors_origins.lower()
        if "localhost" in origins_lower or "127.0.0.1" in origins_lower:
            errors.append(
                "CORS_ORIGINS contains localhost/127.0.0.1 in production. "
                "Configure production frontend URLs."
            )

        if not settings.stt_model_candidates:
            errors.append("STT_MODELS is empty; at least one transcription model is required.")

    if not settings.database_url:
        errors.append("DATABASE_URL is not configured")

    if not settings.cobalt_api_url:
        errors.append("COBALT_API_URL is not configured")

    media_path = Path(settings.media_storage_path)
    if media_path.exists() and not media_path.is_dir():
        errors.append(f"MEDIA_STORAGE_PATH is not a directory: {media_path}")

    return errors


def validate_environment() -> list[str]:
    """Validate runtime environment requirements.

    Returns:
        List of validation warnings (not fatal)
    """
    warnings = []

    if shutil.which("ffmpeg") is None:
        warnings.append(
            "ffmpeg is not installed. Audio above the chunking threshold cannot be split."
        )

    providers = {provider for provider, _ in settings.stt_model_candidates}
    for provider in sorted(providers):
        env_name, read_key = _PROVIDER_KEYS.get(provider, (None, None))
        if env_name is None:
            warnings.append(f"Unknown transcription provider in STT_MODELS: {provider}")
        elif not read_key():
            warnings.append(f"{env_name} is not set; {provider} models will be skipped")

    if not settings.internal_api_key:
        warnings.append("INTERNAL_API_KEY is not set; internal routes are disabled")

    return warnings


async def run_startup_checks() -> None:
    """Run all startup validation checks.

    Raises:
        RuntimeError: If critical configuration errors are found
    """
    logger.info("Running startup validation checks...")

    await ensure_core_tables()

    config_errors = validate_configuration()
    if config_errors:
        logger.error("Configuration validation failed:")
        for error in config_errors:
            logger.error(f"  - {error}")
        raise RuntimeError(
            f"Configuration validation failed with {len(config_errors)} error(s). "
            "Fix configuration and restart."
        )

    logger.info("Configuration validation passed")

    env_warnings = validate_environment()
    if env_warnings:
        logger.warning("Environment checks found issues:")
        for warning in env_warnings:
            logger.warning(f"  - {warning}")
    else:
        logger.info("Environment validation passed")

    logger.info("Startup validation completed")
