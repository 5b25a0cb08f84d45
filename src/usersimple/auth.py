"""End-user authentication and session handling.

A :class:`SessionAuthenticator` is either anonymous or bound to one
identified user. Every check starts by dropping the current identity, so
a failed check never leaves data from a previous user behind.
"""

import hmac
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from prometheus_client import Counter

from . import levels
from .errors import AuthRejection, ConfigurationError, SchemaError, StorageError
from .levels import DEFAULT_ADMIN_LEVEL, is_valid_level, warn_deprecated
from .models.user import AuthenticatedIdentity
from .schema import AUTH_COLUMNS, DEFAULT_TABLE, has_columns, validate_table_name
from .storage import Storage
from .tokens import (
    compute_expiry,
    hash_password,
    new_session_token,
    refresh_expiry,
    session_is_live,
)


DEFAULT_DURATION_MINUTES = 30

LOGIN_COUNTER = Counter(
    "user_simple_login_checks_total",
    "Login/password checks by outcome",
    ["outcome"],
)
SESSION_COUNTER = Counter(
    "user_simple_session_checks_total",
    "Session token checks by outcome",
    ["outcome"],
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form session expiries are stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SessionAuthenticator:
    """Validate users by login/password or session token.

    Args:
        storage: Storage holding the user table.
        table: Name of the user table.
        duration: Minutes a session stays valid after each successful check.
        admin_level: Threshold for the deprecated :meth:`is_admin`.
        logger: Logger to report through; defaults to this module's.
        clock: Callable returning the current naive UTC time.

    Raises:
        ConfigurationError: On invalid arguments.
        SchemaError: If the table is missing or has the wrong columns.
    """

    def __init__(
        self,
        storage: Storage,
        table: str = DEFAULT_TABLE,
        duration: int = DEFAULT_DURATION_MINUTES,
        admin_level: int = DEFAULT_ADMIN_LEVEL,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not isinstance(storage, Storage):
            raise ConfigurationError("Mandatory storage argument must be a Storage")
        if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
            raise ConfigurationError("Duration must be set to a positive integer")
        if not is_valid_level(admin_level):
            raise ConfigurationError("Administrative level must be a non-negative integer")
        self.storage = storage
        self.table = validate_table_name(table)
        self.duration = duration
        self.admin_level = admin_level
        self.log = logger or logging.getLogger(__name__)
        self.clock = clock or utcnow
        self.rejection: Optional[AuthRejection] = None
        self._identity: Optional[AuthenticatedIdentity] = None

        if not has_columns(storage, self.table, AUTH_COLUMNS):
            self.log.error("table %s does not exist or has wrong structure", self.table)
            raise SchemaError(self.table)

    # User validation

    def check_login(
        self, login: str, password: str, skip_session: bool = False
    ) -> Optional[int]:
        """Authenticate by login and password, returning the user id.

        Unless ``skip_session`` is set a fresh session is opened, replacing
        any previous one. With ``skip_session`` the token is kept (for
        instance to confirm the password before a change) and an open
        session only has its expiry pushed forward; a user without a
        session is not given an expiry.
        """
        self._clear()
        row = self.storage.fetch_one(
            f"SELECT id, passwd FROM {self.table} WHERE login = :login", {"login": login}
        )
        if row is None:
            return self._reject(LOGIN_COUNTER, AuthRejection.UNKNOWN_LOGIN, login)
        if not row["passwd"]:
            return self._reject(LOGIN_COUNTER, AuthRejection.DISABLED_ACCOUNT, login)

        user_id = row["id"]
        crypted = hash_password(password or "", user_id)
        if not hmac.compare_digest(crypted, row["passwd"]):
            return self._reject(LOGIN_COUNTER, AuthRejection.BAD_PASSWORD, login)

        try:
            now = self.clock()
            if skip_session:
                self.storage.execute(
                    f"UPDATE {self.table} SET session_exp = :expiry "
                    "WHERE id = :id AND session IS NOT NULL",
                    {"expiry": compute_expiry(now, self.duration), "id": user_id},
                )
            else:
                self.storage.execute(
                    f"UPDATE {self.table} SET session = :session, session_exp = :expiry "
                    "WHERE id = :id",
                    {
                        "session": new_session_token(now, user_id),
                        "expiry": compute_expiry(now, self.duration),
                        "id": user_id,
                    },
                )
            self._identity = self._load(user_id)
        except StorageError:
            self._clear()
            self.log.error("could not update the session of user %s", user_id)
            LOGIN_COUNTER.labels(outcome="error").inc()
            raise

        if self._identity is None:
            return self._reject(LOGIN_COUNTER, AuthRejection.UNKNOWN_LOGIN, login)
        LOGIN_COUNTER.labels(outcome="success").inc()
        self.log.info("login checked for user %s", user_id)
        return user_id

    def check_session(self, session: str) -> Optional[int]:
        """Authenticate by session token and push its expiry forward."""
        self._clear()
        if not session:
            return self._reject(SESSION_COUNTER, AuthRejection.UNKNOWN_SESSION)
        row = self.storage.fetch_one(
            f"SELECT id, session_exp FROM {self.table} WHERE session = :session",
            {"session": session},
        )
        if row is None:
            return self._reject(SESSION_COUNTER, AuthRejection.UNKNOWN_SESSION)

        now = self.clock()
        if not session_is_live(row["session_exp"], now):
            return self._reject(SESSION_COUNTER, AuthRejection.EXPIRED_SESSION)

        user_id = row["id"]
        try:
            self.storage.execute(
                f"UPDATE {self.table} SET session_exp = :expiry "
                "WHERE id = :id AND session = :session",
                {
                    "expiry": refresh_expiry(now, self.duration, row["session_exp"]),
                    "id": user_id,
                    "session": session,
                },
            )
            self._identity = self._load(user_id)
        except StorageError:
            self._clear()
            self.log.error("could not refresh session for user %s", user_id)
            SESSION_COUNTER.labels(outcome="error").inc()
            raise

        if self._identity is None or self._identity.session != session:
            self._clear()
            return self._reject(SESSION_COUNTER, AuthRejection.UNKNOWN_SESSION)
        SESSION_COUNTER.labels(outcome="success").inc()
        self.log.debug("session checked for user %s", user_id)
        return user_id

    def end_session(self) -> bool:
        """Close the current user's session and go back to anonymous."""
        if self._identity is None:
            self.rejection = AuthRejection.NOT_IDENTIFIED
            self.log.info("cannot end session: no user identified")
            return False
        user_id = self._identity.id
        try:
            self.storage.execute(
                f"UPDATE {self.table} SET session = NULL, session_exp = NULL WHERE id = :id",
                {"id": user_id},
            )
        except StorageError:
            self.log.error("could not close the session for user %s", user_id)
            raise
        self._clear()
        self.log.info("session closed for user %s", user_id)
        return True

    def set_password(self, password: str) -> bool:
        """Change the identified user's own password."""
        if self._identity is None:
            self.rejection = AuthRejection.NOT_IDENTIFIED
            return False
        if not password:
            self.log.info("refusing empty password for user %s", self._identity.id)
            return False
        try:
            count = self.storage.execute(
                f"UPDATE {self.table} SET passwd = :passwd WHERE id = :id",
                {"passwd": hash_password(password, self._identity.id), "id": self._identity.id},
            )
        except StorageError:
            self.log.error("could not set the password for user %s", self._identity.id)
            raise
        return count > 0

    # Accessors

    @property
    def identity(self) -> Optional[AuthenticatedIdentity]:
        return self._identity

    @property
    def is_valid(self) -> bool:
        return self._identity is not None

    @property
    def id(self) -> Optional[int]:
        return self._identity.id if self._identity else None

    @property
    def login(self) -> Optional[str]:
        return self._identity.login if self._identity else None

    @property
    def name(self) -> Optional[str]:
        return self._identity.name if self._identity else None

    @property
    def level(self) -> Optional[int]:
        return self._identity.level if self._identity else None

    @property
    def session(self) -> Optional[str]:
        return self._identity.session if self._identity else None

    @property
    def session_expiry(self) -> Optional[datetime]:
        return self._identity.session_expiry if self._identity else None

    def is_admin(self) -> bool:
        warn_deprecated("SessionAuthenticator.is_admin")
        return levels.is_admin(self.level, self.admin_level)

    # Private helpers

    def _load(self, user_id: int) -> Optional[AuthenticatedIdentity]:
        row = self.storage.fetch_one(
            f"SELECT id, login, name, level, session, session_exp FROM {self.table} "
            "WHERE id = :id",
            {"id": user_id},
        )
        return AuthenticatedIdentity.from_row(row) if row else None

    def _clear(self) -> None:
        self._identity = None
        self.rejection = None

    def _reject(
        self, counter: Counter, reason: AuthRejection, login: Optional[str] = None
    ) -> None:
        self.rejection = reason
        counter.labels(outcome=reason.value).inc()
        if login is None:
            self.log.info("authentication rejected (%s)", reason.value)
        else:
            self.log.info("authentication rejected (%s) for %s", reason.value, login)
        return None
