"""
tests/conftest.py -- Shared fixtures for realmauth tests.

This module provides:
  - verifier: PasswordVerifier with bcrypt rounds lowered to 4 for speed
  - realm: default RealmSettings (users / roles / user_roles tables)
  - db_url / engine: a file-backed SQLite database under tmp_path with the
    realm schema created and seeded
  - service: AuthService over the seeded database

Design: a file under tmp_path rather than ':memory:' because bounded store
calls run on worker threads, and a plain ':memory:' database is private to
the connection that created it.

Seed data (mirrors the classic demo app):
  bob   / please  -> role "overlord"  (legacy {SSHA} hash, SHA-1 + salt)
  alice / wonderland -> roles "admin", "editor"  (bcrypt hash)
  carol / secret  -> no roles (bcrypt hash)
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy.engine import Engine

from auth.passwords import PasswordVerifier
from auth.service import AuthService
from auth.store import SqlRoleStore, SqlUserStore, create_schema, create_store_engine
from core.config import RealmSettings

USERS = {
    "bob": ("please", "ssha", ["overlord"]),
    "alice": ("wonderland", "bcrypt", ["admin", "editor"]),
    "carol": ("secret", "bcrypt", []),
}


def seed(engine: Engine, realm: RealmSettings, verifier: PasswordVerifier, users: dict = USERS) -> None:
    """Create the realm schema and insert users, roles and grants."""
    schema = create_schema(engine, realm)
    role_ids: dict[str, int] = {}
    with engine.begin() as conn:
        for name in sorted({r for _pw, _scheme, roles in users.values() for r in roles}):
            result = conn.execute(schema.roles.insert().values({realm.roles_name_column: name}))
            role_ids[name] = result.inserted_primary_key[0]
        for username, (password, scheme, roles) in users.items():
            result = conn.execute(
                schema.users.insert().values(
                    {
                        realm.users_username_column: username,
                        realm.users_password_column: verifier.hash(password, scheme=scheme),
                    }
                )
            )
            user_id = result.inserted_primary_key[0]
            for role in roles:
                conn.execute(
                    schema.user_roles.insert().values(
                        {realm.user_roles_user_column: user_id, realm.user_roles_role_column: role_ids[role]}
                    )
                )


@pytest.fixture(scope="session")
def verifier() -> PasswordVerifier:
    return PasswordVerifier(bcrypt_rounds=4)


@pytest.fixture
def realm() -> RealmSettings:
    return RealmSettings()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'auth.db'}"


@pytest.fixture
def engine(db_url: str, realm: RealmSettings, verifier: PasswordVerifier) -> Generator[Engine, None, None]:
    eng = create_store_engine(db_url, timeout=5.0)
    seed(eng, realm, verifier)
    yield eng
    eng.dispose()


@pytest.fixture
def service(engine: Engine, realm: RealmSettings, verifier: PasswordVerifier) -> AuthService:
    return AuthService(
        SqlUserStore(engine, realm),
        SqlRoleStore(engine, realm),
        verifier,
        realm="users",
    )
