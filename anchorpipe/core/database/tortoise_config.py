"""
Tortoise ORM configuration for Anchorpipe.

Simple, single-file configuration for all database operations.
"""

from typing import Any, Dict, Optional

from tortoise import Tortoise, connections

from ..config import get_config
from ..logging import get_logger

logger = get_logger(__name__)

MODEL_MODULES = ["anchorpipe.core.models.tortoise_models"]


def get_tortoise_config(db_url: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the Tortoise configuration dictionary.

    Args:
        db_url: Override for DATABASE_URL, e.g. ``sqlite://:memory:`` in tests

    Returns:
        Configuration accepted by ``Tortoise.init(config=...)``
    """
    return {
        "connections": {"default": db_url or get_config().database.url},
        "apps": {
            "models": {
                "models": MODEL_MODULES,
                "default_connection": "default",
            },
        },
        "use_tz": True,
        "timezone": "UTC",
    }


async def init_tortoise(
    db_url: Optional[str] = None, generate_schemas: Optional[bool] = None
) -> None:
    """Initialize Tortoise ORM and optionally create missing tables."""
    await Tortoise.init(config=get_tortoise_config(db_url))

    if generate_schemas is None:
        generate_schemas = get_config().database.generate_schemas
    if generate_schemas:
        await Tortoise.generate_schemas(safe=True)

    logger.info("Tortoise ORM initialized", generate_schemas=generate_schemas)


async def close_tortoise() -> None:
    """Close Tortoise ORM connections."""
    await connections.close_all()
    logger.info("Tortoise ORM connections closed")


async def check_database() -> None:
    """Run ``SELECT 1`` on the default connection; raises on failure."""
    await connections.get("default").execute_query("SELECT 1")
