"""Database setup for storing user accounts."""

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from .admin import UserStore
from .config import settings
from .storage import SQLAlchemyStorage


logger = logging.getLogger(__name__)

engine = create_engine(settings.database_url, future=True)


def init_db(bind: Engine = engine) -> None:
    """Create the user table if it does not exist."""
    storage = SQLAlchemyStorage(bind)
    try:
        if UserStore.has_structure(storage, settings.user_table):
            return
        UserStore.provision(
            storage,
            settings.user_table,
            constrained=settings.constrained_schema,
            admin_level=settings.admin_level,
        )
        logger.info("created user table %s", settings.user_table)
    finally:
        storage.close()
