from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from ..tokens import parse_expiry


# Column set shared by both provisioning modes
USER_COLUMNS = ("id", "login", "name", "passwd", "level", "session", "session_exp")


@dataclass
class UserRecord:
    """One row of the user table."""

    id: int
    login: str
    name: str
    passwd: Optional[str]
    level: int
    session: Optional[str]
    session_exp: Optional[str]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserRecord":
        return cls(**{column: row.get(column) for column in USER_COLUMNS})

    @property
    def is_disabled(self) -> bool:
        return not self.passwd


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """What an authenticator knows about the user it has identified."""

    id: int
    login: str
    name: str
    level: int
    session: Optional[str]
    session_expiry: Optional[datetime]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AuthenticatedIdentity":
        return cls(
            id=row["id"],
            login=row["login"],
            name=row["name"],
            level=row["level"] if row["level"] is not None else 0,
            session=row["session"],
            session_expiry=parse_expiry(row["session_exp"]),
        )
