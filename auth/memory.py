"""
auth/memory.py -- Dict-backed UserStore + RoleStore.

Backs "memory" realms (users declared in configuration) and unit tests that
do not need a database. The directory is built once and never mutated
afterwards, so concurrent reads need no locking.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from auth.errors import ConfigurationError
from auth.models import User
from core.config import RealmSettings

logger = logging.getLogger("realmauth.memory")


class InMemoryDirectory:
    """Implements both find_by_username() and roles_for().

    Usage:
        directory = InMemoryDirectory({"bob": ("{SSHA}...", ["overlord"])})
        user = directory.find_by_username("bob")
        directory.roles_for(user)   # ("overlord",)
    """

    name = "memory"

    def __init__(
        self,
        entries: Mapping[str, tuple[str, Iterable[str]]] | None = None,
        case_sensitive: bool = True,
    ) -> None:
        self.case_sensitive = case_sensitive
        self._users: dict[str, User] = {}
        self._roles: dict[str, tuple[str, ...]] = {}
        for username, (password_hash, roles) in (entries or {}).items():
            key = self._key(username)
            if key in self._users:
                raise ConfigurationError(f"Duplicate username {username!r} in memory realm")
            self._users[key] = User(id=username, username=username, password_hash=password_hash)
            self._roles[username] = tuple(sorted(set(roles)))

    @classmethod
    def from_realm(cls, realm: RealmSettings) -> "InMemoryDirectory":
        entries = {name: (u.password_hash, u.roles) for name, u in realm.users.items()}
        return cls(entries, case_sensitive=realm.username_case_sensitive)

    def _key(self, username: str) -> str:
        return username if self.case_sensitive else username.lower()

    def find_by_username(self, username: str) -> User | None:
        user = self._users.get(self._key(username))
        if user is None:
            logger.debug("No such user %r", username)
        return user

    def roles_for(self, user: User) -> tuple[str, ...]:
        return self._roles.get(user.username, ())
