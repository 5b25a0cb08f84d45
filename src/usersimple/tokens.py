"""Password digests, session tokens and session expiry timestamps.

Stored hashes are MD5 hex digests of the password followed by the numeric
user id, so the id acts as salt and a hash can only be checked once the
row has been found. Changing the algorithm invalidates every stored hash.
"""

import hashlib
from datetime import datetime, timedelta
from typing import Optional


EXPIRY_FIELDS = 6


def hash_password(password: str, user_id: int) -> str:
    """Return the stored form of ``password`` for the user ``user_id``."""
    return hashlib.md5(f"{password}{user_id}".encode("utf-8")).hexdigest()


def new_session_token(now: datetime, user_id: int) -> str:
    """Derive a session token from the current timestamp.

    Uniqueness is best-effort: the microseconds and the user id keep two
    logins in the same second apart, but nothing here is unguessable.
    """
    stamp = now.strftime("%Y-%m-%d-%H-%M-%S-%f")
    return hashlib.md5(f"{stamp}-{user_id}".encode("utf-8")).hexdigest()


def format_expiry(moment: datetime) -> str:
    """Encode a timestamp as ``year-month-day-hour-minute-second``."""
    return moment.strftime("%Y-%m-%d-%H-%M-%S")


def parse_expiry(value: Optional[str]) -> Optional[datetime]:
    """Decode a stored expiry, returning ``None`` for anything malformed."""
    if not value:
        return None
    parts = value.split("-")
    if len(parts) != EXPIRY_FIELDS:
        return None
    try:
        return datetime(*(int(part) for part in parts))
    except ValueError:
        return None


def compute_expiry(now: datetime, duration_minutes: int) -> str:
    return format_expiry(now + timedelta(minutes=duration_minutes))


def refresh_expiry(now: datetime, duration_minutes: int, previous: Optional[str]) -> str:
    """Next expiry for a live session, always later than ``previous``.

    Expiries are stored to the second, so a refresh within the same second
    as the last one steps a second past the stored value.
    """
    expires_at = now + timedelta(minutes=duration_minutes)
    stored = parse_expiry(previous)
    if stored is not None and expires_at < stored + timedelta(seconds=1):
        expires_at = stored + timedelta(seconds=1)
    return format_expiry(expires_at)


def session_is_live(expiry: Optional[str], now: datetime) -> bool:
    """A session is live only while its expiry is strictly after ``now``."""
    expires_at = parse_expiry(expiry)
    if expires_at is None:
        return False
    return now < expires_at
