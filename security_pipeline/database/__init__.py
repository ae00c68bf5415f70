"""Database package."""
from security_pipeline.database import models
from security_pipeline.database.connection import (
    Base,
    close_db,
    create_engine_for_url,
    create_session_factory,
    get_engine,
    get_session_factory,
    init_db,
)

__all__ = [
    "Base",
    "create_engine_for_url",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "init_db",
    "close_db",
    "models",
]
