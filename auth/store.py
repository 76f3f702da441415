"""
auth/store.py -- SQLAlchemy Core read layer for users and roles.

Pattern: Repository + Data Mapper. SqlUserStore and SqlRoleStore are the
repositories; _row_to_user is the mapper. AuthService never touches SQL.

Schema (names configurable per realm, see core.config.RealmSettings):
    users(id, username UNIQUE, password_hash)
    roles(id, role_name UNIQUE)
    user_roles(user_id, role_id)

The stores are read-only. Creating users and granting roles belongs to a
provisioning path outside this package; create_schema() exists for that path
and for tests.

Security:
  All queries use bound parameters. Table/column names come from validated
  RealmSettings identifiers, never from request input.

Error contract:
  "No such user" is a None return. Any SQLAlchemyError is re-raised as
  StoreUnavailableError carrying the store and operation names, so callers
  can always tell "not found" from "could not look".

Layer rule: may import core.config for RealmSettings only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, event, func, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import ConfigurationError, DataIntegrityError, StoreUnavailableError
from auth.models import User
from core.config import RealmSettings

logger = logging.getLogger("realmauth.store")


# ---------------------------------------------------------------------------
# Store interfaces
# ---------------------------------------------------------------------------


class UserStore(Protocol):
    def find_by_username(self, username: str) -> User | None: ...


class RoleStore(Protocol):
    def roles_for(self, user: User) -> tuple[str, ...]: ...


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str, timeout: float | None = None) -> Engine:
    """Create an Engine suitable for concurrent read-only lookups.

    SQLite: check_same_thread=False because bounded calls run on worker
    threads; timeout is the driver's busy timeout. Other backends get
    pool_pre_ping so a dropped connection surfaces on checkout.
    """
    if db_url.startswith("sqlite"):
        connect_args: dict = {"check_same_thread": False}
        if timeout is not None:
            connect_args["timeout"] = timeout
        engine = create_engine(db_url, connect_args=connect_args)
        event.listen(engine, "connect", _set_wal_mode)
        return engine
    kwargs: dict = {"pool_pre_ping": True}
    if timeout is not None:
        kwargs["pool_timeout"] = timeout
    return create_engine(db_url, **kwargs)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RealmSchema:
    metadata: MetaData
    users: Table
    roles: Table
    user_roles: Table


def build_schema(realm: RealmSettings, engine: Engine | None = None) -> RealmSchema:
    """Build Table objects for a realm's configured table/column names.

    With an engine, the users table is reflected instead of declared so every
    column of the real table ends up in User.details.
    """
    metadata = MetaData()
    if engine is not None:
        users = _reflect_users(engine, realm, metadata)
    else:
        users = Table(
            realm.users_table,
            metadata,
            Column(realm.users_id_column, Integer, primary_key=True, autoincrement=True),
            Column(realm.users_username_column, String(255), nullable=False, unique=True),
            Column(realm.users_password_column, String(255), nullable=False),
        )
    roles = Table(
        realm.roles_table,
        metadata,
        Column(realm.roles_id_column, Integer, primary_key=True, autoincrement=True),
        Column(realm.roles_name_column, String(255), nullable=False, unique=True),
    )
    user_roles = Table(
        realm.user_roles_table,
        metadata,
        Column(realm.user_roles_user_column, Integer, primary_key=True),
        Column(realm.user_roles_role_column, Integer, primary_key=True),
    )
    return RealmSchema(metadata=metadata, users=users, roles=roles, user_roles=user_roles)


def _reflect_users(engine: Engine, realm: RealmSettings, metadata: MetaData) -> Table:
    try:
        users = Table(realm.users_table, metadata, autoload_with=engine)
    except SQLAlchemyError as exc:
        raise ConfigurationError(f"Cannot load table {realm.users_table!r} from {engine.url!r}: {exc}") from exc
    required = (realm.users_id_column, realm.users_username_column, realm.users_password_column)
    missing = [name for name in required if name not in users.c]
    if missing:
        raise ConfigurationError(f"Table {realm.users_table!r} is missing columns: {', '.join(missing)}")
    return users


def create_schema(engine: Engine, realm: RealmSettings) -> RealmSchema:
    """Create the realm's tables if they do not exist. Provisioning/test helper."""
    schema = build_schema(realm)
    schema.metadata.create_all(engine)
    return schema


def check_schema(engine: Engine, realm: RealmSettings) -> None:
    """Raise ConfigurationError if any table or column the realm reads is missing.

    Called once at startup so a misconfigured realm fails fast instead of
    surfacing as StoreUnavailableError on the first login or role lookup.
    """
    required = {
        realm.users_table: [realm.users_id_column, realm.users_username_column, realm.users_password_column],
    }
    if realm.roles_enabled:
        required[realm.roles_table] = [realm.roles_id_column, realm.roles_name_column]
        required[realm.user_roles_table] = [realm.user_roles_user_column, realm.user_roles_role_column]
    try:
        inspector = inspect(engine)
        missing_tables = [name for name in required if not inspector.has_table(name)]
        if missing_tables:
            raise ConfigurationError(f"Database {engine.url!r} is missing tables: {', '.join(missing_tables)}")
        missing_columns = []
        for table, columns in required.items():
            present = {col["name"] for col in inspector.get_columns(table)}
            missing_columns += [f"{table}.{col}" for col in columns if col not in present]
    except SQLAlchemyError as exc:
        raise ConfigurationError(f"Cannot inspect database {engine.url!r}: {exc}") from exc
    if missing_columns:
        raise ConfigurationError(f"Database {engine.url!r} is missing columns: {', '.join(missing_columns)}")


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class SqlUserStore:
    """UserStore over a users table.

    Usage:
        store = SqlUserStore(engine, RealmSettings())
        user = store.find_by_username("bob")   # User or None
    """

    name = "users"

    def __init__(self, engine: Engine, realm: RealmSettings, schema: RealmSchema | None = None) -> None:
        self.engine = engine
        self.realm = realm
        self._users = (schema or build_schema(realm)).users

    def find_by_username(self, username: str) -> User | None:
        """Look up a user by username.

        Exact (case-sensitive) match unless the realm disables case
        sensitivity. More than one match is a DataIntegrityError.
        """
        column = self._users.c[self.realm.users_username_column]
        if self.realm.username_case_sensitive:
            clause = column == username
        else:
            clause = func.lower(column) == username.lower()
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(select(self._users).where(clause).limit(2)).fetchall()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(str(exc), store=self.name, operation="find_by_username") from exc
        if not rows:
            logger.debug("No such user %r", username)
            return None
        if len(rows) > 1:
            raise DataIntegrityError(
                f"username {username!r} matches more than one user", store=self.name, operation="find_by_username"
            )
        return _row_to_user(rows[0], self.realm)


class SqlRoleStore:
    """RoleStore over the roles / user_roles tables."""

    name = "roles"

    def __init__(self, engine: Engine, realm: RealmSettings, schema: RealmSchema | None = None) -> None:
        self.engine = engine
        self.realm = realm
        schema = schema or build_schema(realm)
        self._roles = schema.roles
        self._user_roles = schema.user_roles

    def roles_for(self, user: User) -> tuple[str, ...]:
        """Return the user's role names, sorted and de-duplicated.

        LEFT OUTER JOIN so a user_roles row pointing at a missing role shows
        up as a NULL name and is reported as DataIntegrityError rather than
        silently dropped.
        """
        ur = self._user_roles
        roles = self._roles
        role_id = ur.c[self.realm.user_roles_role_column]
        role_name = roles.c[self.realm.roles_name_column]
        query = (
            select(role_id, role_name)
            .select_from(ur.outerjoin(roles, role_id == roles.c[self.realm.roles_id_column]))
            .where(ur.c[self.realm.user_roles_user_column] == user.id)
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).fetchall()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(str(exc), store=self.name, operation="roles_for") from exc
        orphaned = sorted({row[0] for row in rows if row[1] is None})
        if orphaned:
            raise DataIntegrityError(
                f"user {user.username!r} references missing role ids {orphaned}",
                store=self.name,
                operation="roles_for",
            )
        return tuple(sorted({row[1] for row in rows}))


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, realm: RealmSettings) -> User:
    data = dict(row._mapping)
    return User(
        id=data.pop(realm.users_id_column),
        username=data.pop(realm.users_username_column),
        password_hash=data.pop(realm.users_password_column),
        details=data,
    )
