"""
auth/errors.py -- Exception taxonomy for realmauth.

Two families, never conflated:
  InfrastructureError -- the system could not answer (store down, timeout,
      corrupt data). Callers render these as a service error.
  ConfigurationError  -- the realm setup is wrong. Raised at startup where
      feasible.

"Unknown user" and "wrong password" are NOT exceptions. They come back as
FailureReason values on AuthOutcome (see auth/models.py).
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error raised by realmauth."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InfrastructureError(AuthError):
    """The credential lookup could not be completed.

    store / operation name where it happened, e.g. ("users", "find_by_username").
    """

    def __init__(self, message: str, store: str | None = None, operation: str | None = None) -> None:
        self.store = store
        self.operation = operation
        if store and operation:
            message = f"{store}.{operation}: {message}"
        super().__init__(message)


class StoreUnavailableError(InfrastructureError):
    """Storage unreachable or a query failed."""


class StoreTimeoutError(InfrastructureError):
    """A store call exceeded its time budget or was cancelled."""


class MalformedHashError(InfrastructureError):
    """A stored password hash could not be parsed."""


class DataIntegrityError(InfrastructureError):
    """Stored data breaks an invariant (duplicate usernames, orphaned role rows)."""


class ConfigurationError(AuthError):
    """Realm configuration is missing or invalid."""


class UnknownRealmError(ConfigurationError):
    def __init__(self, realm: str) -> None:
        self.realm = realm
        super().__init__(f"No such realm: {realm!r}")


class RolesDisabledError(ConfigurationError):
    def __init__(self, realm: str | None = None) -> None:
        self.realm = realm
        where = f" for realm {realm!r}" if realm else ""
        super().__init__(f"Roles are disabled{where}")
