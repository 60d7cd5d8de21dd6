"""
Database package for Anchorpipe.
"""

from .tortoise_config import (
    MODEL_MODULES,
    check_database,
    close_tortoise,
    get_tortoise_config,
    init_tortoise,
)

__all__ = [
    "MODEL_MODULES",
    "check_database",
    "close_tortoise",
    "get_tortoise_config",
    "init_tortoise",
]
