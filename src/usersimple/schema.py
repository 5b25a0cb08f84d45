"""DDL and structure checks for the user table."""

import re

from .errors import ConfigurationError, StorageError
from .models.user import USER_COLUMNS
from .storage import Storage

DEFAULT_TABLE = "user_simple"

_TABLE_NAME = re.compile(r"^\w+$", re.ASCII)

# id is a plain integer rather than a serial: not every backend has one,
# so ids are allocated by UserStore.create_user.
_CONSTRAINED_DDL = """
CREATE TABLE {table} (
    id integer PRIMARY KEY,
    login varchar(255) NOT NULL UNIQUE,
    name varchar(255) NOT NULL,
    passwd varchar(32),
    level integer NOT NULL DEFAULT 0,
    session varchar(32),
    session_exp varchar(20)
)
"""

_PERMISSIVE_DDL = """
CREATE TABLE {table} (
    id integer,
    login varchar(255),
    name varchar(255),
    passwd varchar(32),
    level integer,
    session varchar(32),
    session_exp varchar(20)
)
"""

# The authenticator only reads these; the admin side needs every column.
AUTH_COLUMNS = ("id", "login", "name", "level")


def validate_table_name(table) -> str:
    """Table names are interpolated into SQL, so only word characters pass."""
    if not isinstance(table, str) or not _TABLE_NAME.match(table):
        raise ConfigurationError(f"Invalid table name {table!r}")
    return table


def create_table_sql(table: str, constrained: bool = True) -> str:
    ddl = _CONSTRAINED_DDL if constrained else _PERMISSIVE_DDL
    return ddl.format(table=validate_table_name(table))


def has_columns(storage: Storage, table: str, columns=USER_COLUMNS) -> bool:
    """Check the table answers a read of ``columns``.

    This can pass on a table with the right column names but the wrong
    types; it is only meant to tell a usable table from a missing one.
    """
    sql = f"SELECT {', '.join(columns)} FROM {validate_table_name(table)} LIMIT 1"
    try:
        storage.fetch_one(sql)
    except StorageError:
        return False
    return True
