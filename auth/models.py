"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores produce
User records; AuthService produces AuthOutcome records. Neither is persisted
by this package.

Layer rule: no imports from core/.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Generic failure label shown to end users. Unknown usernames and wrong
# passwords both map to it so responses cannot be used to enumerate accounts.
INVALID_CREDENTIALS = "invalid_credentials"


@dataclass(frozen=True)
class User:
    """A user record as read from a UserStore.

    id is an integer for database realms and the username for memory realms.
    details holds every other column of the user row (read-only convenience
    for callers that want more than the credentials).
    """

    id: int | str
    username: str
    password_hash: str
    details: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __repr__(self) -> str:
        # Keep hashes out of logs and tracebacks
        return f"User(id={self.id!r}, username={self.username!r})"


class FailureReason(str, Enum):
    """Why an authentication attempt failed. Internal detail -- see public_reason."""

    NOT_FOUND = "not_found"
    CREDENTIAL_MISMATCH = "credential_mismatch"


@dataclass(frozen=True)
class AuthOutcome:
    """Result of one authenticate() call.

    realm is the caller-supplied tag (or, for multi-realm lookups, the realm
    that matched), returned unmodified so the session layer can bind it.
    """

    success: bool
    realm: str | None = None
    user: User | None = None
    reason: FailureReason | None = None

    @property
    def public_reason(self) -> str | None:
        return None if self.success else INVALID_CREDENTIALS

    def __bool__(self) -> bool:
        return self.success


def join_roles(roles: Iterable[str], separator: str = ":") -> str:
    """Join role names for display, sorted and de-duplicated."""
    return separator.join(sorted(set(roles)))
