"""Administrative access to the user table.

``UserStore`` owns the table lifecycle: provisioning, user creation and
removal, and changes to login, name, level and password. End-user flows
(logging in, sessions) live in :mod:`usersimple.auth`.
"""

import logging
import warnings
from typing import Any, Dict, Optional

from .errors import (
    ConfigurationError,
    InconsistentStateWarning,
    IntegrityViolation,
    InvalidFieldError,
    SchemaError,
    StorageError,
    UserSimpleError,
)
from . import levels
from .levels import DEFAULT_ADMIN_LEVEL, NO_PRIVILEGE, is_valid_level, warn_deprecated
from .models.user import UserRecord
from .schema import DEFAULT_TABLE, create_table_sql, has_columns, validate_table_name
from .storage import Storage
from .tokens import hash_password


logger = logging.getLogger(__name__)

# Fields reachable through get_field/set_field. The password has its own path.
ADMIN_FIELDS = ("login", "name", "level")


class UserStore:
    """Administrative operations on the user table.

    Args:
        storage: Storage the table lives in.
        table: Name of the user table.
        admin_level: Threshold used by the deprecated ``is_admin`` helpers.
        logger: Logger to report through; defaults to this module's.

    Raises:
        ConfigurationError: On an invalid table name or threshold.
        SchemaError: If the table is missing or has the wrong columns.
    """

    def __init__(
        self,
        storage: Storage,
        table: str = DEFAULT_TABLE,
        admin_level: int = DEFAULT_ADMIN_LEVEL,
        logger: Optional[logging.Logger] = None,
    ):
        if not isinstance(storage, Storage):
            raise ConfigurationError("Mandatory storage argument must be a Storage")
        if not is_valid_level(admin_level):
            raise ConfigurationError("Administrative level must be a non-negative integer")
        self.storage = storage
        self.table = validate_table_name(table)
        self.admin_level = admin_level
        self.log = logger or logging.getLogger(__name__)
        if not self.has_structure(storage, self.table):
            self.log.error("table %s does not exist or has wrong structure", self.table)
            raise SchemaError(self.table)

    @classmethod
    def provision(
        cls,
        storage: Storage,
        table: str = DEFAULT_TABLE,
        constrained: bool = True,
        **kwargs,
    ) -> "UserStore":
        """Create the user table and return a store attached to it.

        ``constrained=False`` leaves out PRIMARY KEY, UNIQUE and NOT NULL for
        backends that cannot enforce them; login uniqueness is then only
        checked by this class.
        """
        sql = create_table_sql(table, constrained)
        try:
            storage.execute(sql)
        except StorageError as exc:
            logger.error("could not create table %s", table)
            raise SchemaError(table, "could not be created") from exc
        return cls(storage, table, **kwargs)

    @staticmethod
    def has_structure(storage: Storage, table: str = DEFAULT_TABLE) -> bool:
        return has_columns(storage, table)

    # Retrieving information

    def list_users(self) -> Dict[int, Dict[str, Any]]:
        """Return every user as ``{id: {"login", "name", "level"}}``."""
        rows = self.storage.fetch_all(f"SELECT id, login, name, level FROM {self.table}")
        return {
            row["id"]: {"login": row["login"], "name": row["name"], "level": row["level"]}
            for row in rows
        }

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        row = self.storage.fetch_one(
            f"SELECT * FROM {self.table} WHERE id = :id", {"id": user_id}
        )
        return UserRecord.from_row(row) if row else None

    def id_for_login(self, login: str) -> Optional[int]:
        row = self.storage.fetch_one(
            f"SELECT id FROM {self.table} WHERE login = :login", {"login": login}
        )
        return row["id"] if row else None

    def get_field(self, user_id: int, field: str) -> Any:
        if field not in ADMIN_FIELDS:
            raise InvalidFieldError(field)
        row = self.storage.fetch_one(
            f"SELECT {field} FROM {self.table} WHERE id = :id", {"id": user_id}
        )
        return row[field] if row else None

    def login(self, user_id: int) -> Optional[str]:
        return self.get_field(user_id, "login")

    def name(self, user_id: int) -> Optional[str]:
        return self.get_field(user_id, "name")

    def level(self, user_id: int) -> Optional[int]:
        return self.get_field(user_id, "level")

    # Modifying information

    def set_field(self, user_id: int, field: str, value: Any) -> bool:
        """Write one administrable field; ``True`` if a row was updated."""
        if field not in ADMIN_FIELDS:
            raise InvalidFieldError(field)
        if field == "level" and not is_valid_level(value):
            raise IntegrityViolation(f"Level must be a non-negative integer, got {value!r}")
        if field == "login":
            owner = self.id_for_login(value)
            if owner is not None and owner != user_id:
                self.log.info("login %s already belongs to user %s", value, owner)
                return False
        return self._update(user_id, field, value)

    def set_login(self, user_id: int, login: str) -> bool:
        return self.set_field(user_id, "login", login)

    def set_name(self, user_id: int, name: str) -> bool:
        return self.set_field(user_id, "name", name)

    def set_level(self, user_id: int, level: int) -> bool:
        return self.set_field(user_id, "level", level)

    def set_password(self, user_id: int, password: str) -> bool:
        """Store the digest of ``password``; an empty one disables the account."""
        crypted = hash_password(password, user_id) if password else None
        return self._update(user_id, "passwd", crypted)

    def clear_session(self, user_id: int) -> bool:
        """Close whatever session the user has open."""
        count = self.storage.execute(
            f"UPDATE {self.table} SET session = NULL, session_exp = NULL WHERE id = :id",
            {"id": user_id},
        )
        return count > 0

    def _update(self, user_id: int, column: str, value: Any) -> bool:
        try:
            count = self.storage.execute(
                f"UPDATE {self.table} SET {column} = :value WHERE id = :id",
                {"value": value, "id": user_id},
            )
        except UserSimpleError:
            self.log.error("could not set %s for user %s", column, user_id)
            raise
        if count == 0:
            self.log.info("no user with id %s", user_id)
        return count > 0

    # Deprecated boolean view of the level

    def is_admin(self, user_id: int) -> bool:
        warn_deprecated("UserStore.is_admin")
        return levels.is_admin(self.level(user_id), self.admin_level)

    def set_admin(self, user_id: int) -> bool:
        warn_deprecated("UserStore.set_admin")
        return self.set_level(user_id, self.admin_level)

    def unset_admin(self, user_id: int) -> bool:
        warn_deprecated("UserStore.unset_admin")
        return self.set_level(user_id, NO_PRIVILEGE)

    # User creation and removal

    def create_user(
        self, login: str, name: str, password: str, level: int = NO_PRIVILEGE
    ) -> Optional[int]:
        """Create a user and return its id, or ``None`` if it was rejected.

        Ids are allocated as the current maximum plus one. Two processes
        creating users at once can pick the same id; the constrained schema
        turns that into a failed insert, the permissive one does not, so
        callers needing unique ids must serialize calls themselves.
        """
        if not is_valid_level(level):
            raise IntegrityViolation(f"Level must be a non-negative integer, got {level!r}")
        if self.id_for_login(login) is not None:
            self.log.info("login %s is already taken", login)
            return None

        if not self.storage.supports_transactions:
            self.log.warning(
                "storage has no transactions, creating %s is not atomic", login
            )
        inserted = False
        try:
            with self.storage.transaction():
                user_id = self._next_id()
                self.storage.execute(
                    f"INSERT INTO {self.table} (id, login, name, level) "
                    "VALUES (:id, :login, :name, :level)",
                    {"id": user_id, "login": login, "name": name, "level": level},
                )
                inserted = True
                if not self.set_password(user_id, password):
                    raise StorageError(f"password for new user {user_id} was not stored")
        except IntegrityViolation:
            if inserted:
                self._report_partial(login)
            self.log.info("could not create user %s: constraint violation", login)
            return None
        except StorageError:
            if inserted:
                self._report_partial(login)
            self.log.exception("could not create user %s", login)
            raise

        self.log.info("created user %s with id %s", login, user_id)
        return user_id

    def _next_id(self) -> int:
        row = self.storage.fetch_one(f"SELECT MAX(id) AS max_id FROM {self.table}")
        current = row["max_id"] if row else None
        return (current or 0) + 1

    def _report_partial(self, login: str) -> None:
        if self.storage.supports_transactions:
            return
        warnings.warn(
            f"creating user {login} failed without a transaction, "
            "the table may hold a partial row",
            InconsistentStateWarning,
            stacklevel=3,
        )

    def remove_user(self, user_id: int) -> bool:
        count = self.storage.execute(
            f"DELETE FROM {self.table} WHERE id = :id", {"id": user_id}
        )
        if count:
            self.log.info("removed user %s", user_id)
        return count > 0
