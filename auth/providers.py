"""
auth/providers.py -- Credential providers: where a realm's users and roles live.

A provider bundles one UserStore and (optionally) one RoleStore. Which
provider backs a realm is a configuration choice (RealmSettings.provider):

    "database" -> DatabaseProvider: SQLAlchemy Core stores over the realm's tables
    "memory"   -> InMemoryProvider: users declared inline in the realm config

close() releases whatever the provider owns. It is safe to call twice.
"""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.engine import Engine

from auth.errors import ConfigurationError
from auth.memory import InMemoryDirectory
from auth.store import (
    RoleStore,
    SqlRoleStore,
    SqlUserStore,
    UserStore,
    build_schema,
    check_schema,
    create_store_engine,
)
from core.config import RealmSettings

logger = logging.getLogger("realmauth.providers")


class CredentialProvider(Protocol):
    user_store: UserStore
    role_store: RoleStore | None

    def close(self) -> None: ...


class DatabaseProvider:
    """Users and roles read from a relational database.

    Authenticator shares one engine per database URL and passes it in, so by
    default the engine belongs to the caller and close() leaves it alone.
    A provider built with from_url() owns its engine and disposes it.
    """

    def __init__(
        self,
        engine: Engine,
        realm: RealmSettings,
        verify_schema: bool = True,
        owns_engine: bool = False,
    ) -> None:
        if verify_schema:
            check_schema(engine, realm)
            schema = build_schema(realm, engine=engine)
        else:
            schema = build_schema(realm)
        self.engine = engine
        self.owns_engine = owns_engine
        self.user_store: UserStore = SqlUserStore(engine, realm, schema)
        self.role_store: RoleStore | None = SqlRoleStore(engine, realm, schema) if realm.roles_enabled else None

    @classmethod
    def from_url(
        cls, db_url: str, realm: RealmSettings, timeout: float | None = None, verify_schema: bool = True
    ) -> "DatabaseProvider":
        engine = create_store_engine(db_url, timeout=timeout)
        try:
            return cls(engine, realm, verify_schema=verify_schema, owns_engine=True)
        except Exception:
            engine.dispose()
            raise

    def close(self) -> None:
        if self.owns_engine:
            self.engine.dispose()
            self.owns_engine = False


class InMemoryProvider:
    """Users and roles declared in configuration."""

    def __init__(self, realm: RealmSettings) -> None:
        directory = InMemoryDirectory.from_realm(realm)
        self.user_store: UserStore = directory
        self.role_store: RoleStore | None = directory if realm.roles_enabled else None

    def close(self) -> None:
        pass


def build_provider(
    name: str,
    realm: RealmSettings,
    engine: Engine | None = None,
    verify_schema: bool = True,
) -> CredentialProvider:
    """Construct the provider a realm is configured for."""
    if realm.provider == "memory":
        if not realm.users:
            logger.warning("Memory realm %s declares no users", name)
        return InMemoryProvider(realm)
    if realm.provider == "database":
        if engine is None:
            raise ConfigurationError(f"Realm {name!r} uses the database provider but no engine was supplied")
        return DatabaseProvider(engine, realm, verify_schema=verify_schema)
    raise ConfigurationError(f"Realm {name!r} has unknown provider {realm.provider!r}")
