"""Privilege levels.

``level`` is the only stored privilege fact. The admin threshold belongs
to whoever asks the question, never to the user row.
"""

import warnings

DEFAULT_ADMIN_LEVEL = 1
NO_PRIVILEGE = 0


def is_valid_level(level) -> bool:
    return isinstance(level, int) and not isinstance(level, bool) and level >= 0


def is_admin(level, threshold: int = DEFAULT_ADMIN_LEVEL) -> bool:
    """Return whether ``level`` reaches ``threshold``; ``None`` is never admin."""
    if level is None:
        return False
    return int(level) >= threshold


def warn_deprecated(name: str) -> None:
    warnings.warn(
        f"{name} is deprecated, compare the user level instead",
        DeprecationWarning,
        stacklevel=3,
    )
