"""Exceptions and rejection reasons shared by the user-simple components."""

from enum import Enum


class UserSimpleError(Exception):
    """Base exception for all user-simple errors."""

    pass


class ConfigurationError(UserSimpleError):
    """Raised when a component is constructed with invalid arguments."""

    pass


class SchemaError(UserSimpleError):
    """Raised when the user table is missing or has the wrong structure."""

    def __init__(self, table: str, detail: str = "does not exist or has wrong structure"):
        self.table = table
        super().__init__(f"Table '{table}' {detail}")


class StorageError(UserSimpleError):
    """Raised when the storage backend fails to prepare or run a query."""

    pass


class IntegrityViolation(UserSimpleError):
    """Raised when a write is rejected before (or by) the storage constraints."""

    pass


class InvalidFieldError(IntegrityViolation):
    """Raised when a field outside the administrable set is requested."""

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Invalid field: {field}")


class InconsistentStateWarning(UserWarning):
    """A multi-statement write failed on storage without transactions."""


class AuthRejection(str, Enum):
    """Why an authentication attempt was turned down.

    These are expected outcomes, not errors: the public calls return ``None``
    or ``False`` and leave the reason on the authenticator.
    """

    UNKNOWN_LOGIN = "unknown_login"
    DISABLED_ACCOUNT = "disabled_account"
    BAD_PASSWORD = "bad_password"
    UNKNOWN_SESSION = "unknown_session"
    EXPIRED_SESSION = "expired_session"
    NOT_IDENTIFIED = "not_identified"
