from . import models  # re-export module for convenience
from .db import (
    fastapi_session,
    get_engine,
    get_scoped_session,
    get_sessionmaker,
    init_database,
)
from .settings import get_settings, reset_settings_cache

__all__ = [
    "models",
    "get_settings",
    "reset_settings_cache",
    "get_engine",
    "get_sessionmaker",
    "get_scoped_session",
    "fastapi_session",
    "init_database",
]
