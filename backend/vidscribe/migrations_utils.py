"""Database migration utilities for application startup."""

import logging

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from vidscribe.config import BACKEND_ROOT

logger = logging.getLogger("vidscribe.migrations")


def get_alembic_config() -> Config:
    """Get Alembic configuration object.

    Returns:
        Configured Alembic Config instance
    """
    alembic_ini_path = BACKEND_ROOT / "alembic.ini"

    if not alembic_ini_path.exists():
        raise FileNotFoundError(f"alembic.ini not found at {alembic_ini_path}")

    config = Config(str(alembic_ini_path))
    config.set_main_option("script_location", str(BACKEND_ROOT / "alembic"))
    return config


async def check_migration_status(engine: AsyncEngine) -> tuple[str, str]:
    """Check current database migration status.

    Args:
        engine: AsyncEngine instance

    Returns:
        Tuple of (current_revision, head_revision); ``unknown`` when either
        side cannot be read
    """
    try:
        config = get_alembic_config()

        async with engine.begin() as conn:
            result = await conn.execute(text("SELECT version_num FROM alembic_version"))
            current = result.scalar_one_or_none()

        head = ScriptDirectory.from_config(config).get_current_head()
        return (current or "none", head or "none")

    except Exception as e:
        logger.warning(f"Could not check migration status: {e}")
        return ("unknown", "unknown")
