"""Simple user accounts and session management on a relational table."""

from .admin import UserStore
from .auth import SessionAuthenticator
from .errors import (
    AuthRejection,
    ConfigurationError,
    IntegrityViolation,
    SchemaError,
    StorageError,
)
from .storage import SQLAlchemyStorage, Storage

__all__ = [
    "UserStore",
    "SessionAuthenticator",
    "Storage",
    "SQLAlchemyStorage",
    "AuthRejection",
    "ConfigurationError",
    "IntegrityViolation",
    "SchemaError",
    "StorageError",
]
