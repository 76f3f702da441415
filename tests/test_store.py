"""Unit tests for auth/store.py and auth/memory.py -- user and role lookups.

Covers:
- find_by_username() exact match, None for unknown users, optional case folding
- extra user columns are exposed through User.details when reflected
- roles_for() returns sorted, de-duplicated names and () for no roles
- orphaned user_roles rows and duplicate usernames raise DataIntegrityError
- query/connection failures raise StoreUnavailableError, never None
- check_schema() fails fast on missing tables and missing columns
- InMemoryDirectory mirrors the same contract
"""

from __future__ import annotations

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table, text

from auth.errors import ConfigurationError, DataIntegrityError, InfrastructureError, StoreUnavailableError
from auth.memory import InMemoryDirectory
from auth.models import User
from auth.store import (
    SqlRoleStore,
    SqlUserStore,
    build_schema,
    check_schema,
    create_store_engine,
)
from core.config import MemoryUser, RealmSettings

# ---------------------------------------------------------------------------
# SqlUserStore
# ---------------------------------------------------------------------------


class TestSqlUserStore:
    def test_finds_existing_user(self, engine, realm):
        user = SqlUserStore(engine, realm).find_by_username("bob")
        assert user is not None
        assert user.username == "bob"
        assert user.password_hash.startswith("{SSHA}")
        assert isinstance(user.id, int)

    def test_unknown_user_returns_none(self, engine, realm):
        assert SqlUserStore(engine, realm).find_by_username("max") is None

    def test_lookup_is_case_sensitive_by_default(self, engine, realm):
        assert SqlUserStore(engine, realm).find_by_username("BOB") is None

    def test_case_insensitive_realm(self, engine):
        realm = RealmSettings(username_case_sensitive=False)
        user = SqlUserStore(engine, realm).find_by_username("BoB")
        assert user is not None
        assert user.username == "bob"

    def test_duplicate_usernames_under_case_folding(self, engine, realm):
        with engine.begin() as conn:
            conn.execute(text("INSERT INTO users (username, password_hash) VALUES ('Bob', '{SHA}x')"))
        folded = RealmSettings(username_case_sensitive=False)
        with pytest.raises(DataIntegrityError):
            SqlUserStore(engine, folded).find_by_username("bob")

    def test_reflected_table_exposes_extra_columns(self, engine, realm):
        with engine.begin() as conn:
            conn.execute(text("ALTER TABLE users ADD COLUMN email TEXT"))
            conn.execute(text("UPDATE users SET email = 'bob@example.com' WHERE username = 'bob'"))
        schema = build_schema(realm, engine=engine)
        user = SqlUserStore(engine, realm, schema).find_by_username("bob")
        assert user.details == {"email": "bob@example.com"}

    def test_repr_hides_password_hash(self, engine, realm):
        user = SqlUserStore(engine, realm).find_by_username("bob")
        assert "SSHA" not in repr(user)

    def test_missing_table_is_store_unavailable(self, tmp_path, realm):
        empty = create_store_engine(f"sqlite:///{tmp_path / 'empty.db'}")
        try:
            with pytest.raises(StoreUnavailableError) as exc_info:
                SqlUserStore(empty, realm).find_by_username("bob")
        finally:
            empty.dispose()
        assert exc_info.value.store == "users"
        assert exc_info.value.operation == "find_by_username"

    def test_unreachable_database_is_store_unavailable(self, tmp_path, realm):
        broken = create_store_engine(f"sqlite:///{tmp_path / 'missing-dir' / 'auth.db'}")
        try:
            with pytest.raises(InfrastructureError):
                SqlUserStore(broken, realm).find_by_username("bob")
        finally:
            broken.dispose()


# ---------------------------------------------------------------------------
# SqlRoleStore
# ---------------------------------------------------------------------------


class TestSqlRoleStore:
    def test_single_role(self, engine, realm):
        bob = SqlUserStore(engine, realm).find_by_username("bob")
        assert SqlRoleStore(engine, realm).roles_for(bob) == ("overlord",)

    def test_roles_are_sorted(self, engine, realm):
        alice = SqlUserStore(engine, realm).find_by_username("alice")
        assert SqlRoleStore(engine, realm).roles_for(alice) == ("admin", "editor")

    def test_no_roles_is_empty_not_error(self, engine, realm):
        carol = SqlUserStore(engine, realm).find_by_username("carol")
        assert SqlRoleStore(engine, realm).roles_for(carol) == ()

    def test_repeated_lookup_is_idempotent(self, engine, realm):
        alice = SqlUserStore(engine, realm).find_by_username("alice")
        store = SqlRoleStore(engine, realm)
        assert store.roles_for(alice) == store.roles_for(alice)

    def test_orphaned_grant_is_integrity_error(self, engine, realm):
        bob = SqlUserStore(engine, realm).find_by_username("bob")
        with engine.begin() as conn:
            conn.execute(text("INSERT INTO user_roles (user_id, role_id) VALUES (:u, 999)"), {"u": bob.id})
        with pytest.raises(DataIntegrityError, match="999"):
            SqlRoleStore(engine, realm).roles_for(bob)


# ---------------------------------------------------------------------------
# Custom table / column names
# ---------------------------------------------------------------------------


class TestCustomSchema:
    def test_configured_names_are_used(self, tmp_path, verifier):
        realm = RealmSettings(
            users_table="accounts",
            users_id_column="account_id",
            users_username_column="login",
            users_password_column="pw",
            roles_table="groups",
            roles_id_column="group_id",
            roles_name_column="label",
            user_roles_table="memberships",
            user_roles_user_column="account_id",
            user_roles_role_column="group_id",
        )
        eng = create_store_engine(f"sqlite:///{tmp_path / 'custom.db'}")
        metadata = MetaData()
        Table(
            "accounts",
            metadata,
            Column("account_id", Integer, primary_key=True),
            Column("login", String(32), unique=True),
            Column("pw", String(255)),
        )
        Table("groups", metadata, Column("group_id", Integer, primary_key=True), Column("label", String(32)))
        Table("memberships", metadata, Column("account_id", Integer), Column("group_id", Integer))
        metadata.create_all(eng)
        with eng.begin() as conn:
            conn.execute(
                text("INSERT INTO accounts (account_id, login, pw) VALUES (7, 'bob', :pw)"),
                {"pw": verifier.hash("please", scheme="ssha")},
            )
            conn.execute(text("INSERT INTO groups (group_id, label) VALUES (3, 'overlord')"))
            conn.execute(text("INSERT INTO memberships (account_id, group_id) VALUES (7, 3)"))
        try:
            check_schema(eng, realm)
            schema = build_schema(realm, engine=eng)
            user = SqlUserStore(eng, realm, schema).find_by_username("bob")
            assert user.id == 7
            assert SqlRoleStore(eng, realm, schema).roles_for(user) == ("overlord",)
        finally:
            eng.dispose()


class TestCheckSchema:
    def test_existing_schema_passes(self, engine, realm):
        check_schema(engine, realm)

    def test_missing_tables_fail_fast(self, tmp_path, realm):
        empty = create_store_engine(f"sqlite:///{tmp_path / 'empty.db'}")
        try:
            with pytest.raises(ConfigurationError, match="users"):
                check_schema(empty, realm)
        finally:
            empty.dispose()

    def test_role_tables_not_required_when_roles_disabled(self, engine):
        with engine.begin() as conn:
            conn.execute(text("DROP TABLE user_roles"))
            conn.execute(text("DROP TABLE roles"))
        check_schema(engine, RealmSettings(roles_enabled=False))

    def test_missing_column_fails_on_reflection(self, engine):
        realm = RealmSettings(users_password_column="password")
        with pytest.raises(ConfigurationError, match="password"):
            build_schema(realm, engine=engine)

    def test_missing_role_name_column_fails_fast(self, engine):
        realm = RealmSettings(roles_name_column="role")
        with pytest.raises(ConfigurationError, match="roles.role"):
            check_schema(engine, realm)

    def test_missing_user_roles_column_fails_fast(self, engine):
        realm = RealmSettings(user_roles_role_column="group_id")
        with pytest.raises(ConfigurationError, match="user_roles.group_id"):
            check_schema(engine, realm)

    def test_role_columns_ignored_when_roles_disabled(self, engine):
        check_schema(engine, RealmSettings(roles_enabled=False, roles_name_column="role"))

    def test_missing_users_column_reported_by_check(self, engine):
        with pytest.raises(ConfigurationError, match="users.password"):
            check_schema(engine, RealmSettings(users_password_column="password"))


# ---------------------------------------------------------------------------
# InMemoryDirectory
# ---------------------------------------------------------------------------


class TestInMemoryDirectory:
    def test_find_and_roles(self):
        directory = InMemoryDirectory({"bob": ("{SHA}x", ["overlord", "overlord"])})
        bob = directory.find_by_username("bob")
        assert bob == User(id="bob", username="bob", password_hash="{SHA}x")
        assert directory.roles_for(bob) == ("overlord",)

    def test_unknown_user(self):
        assert InMemoryDirectory({}).find_by_username("max") is None

    def test_case_folding(self):
        directory = InMemoryDirectory({"Bob": ("{SHA}x", [])}, case_sensitive=False)
        assert directory.find_by_username("bOB").username == "Bob"

    def test_duplicate_after_folding_rejected(self):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            InMemoryDirectory({"bob": ("{SHA}x", []), "BOB": ("{SHA}y", [])}, case_sensitive=False)

    def test_from_realm(self):
        realm = RealmSettings(
            provider="memory",
            users={"bob": MemoryUser(password_hash="{SHA}x", roles=["overlord"])},
        )
        directory = InMemoryDirectory.from_realm(realm)
        assert directory.roles_for(directory.find_by_username("bob")) == ("overlord",)
