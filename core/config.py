"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads for realmauth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() or
pass a Settings instance to Authenticator.from_settings().

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. bcrypt_rounds -> BCRYPT_ROUNDS). The realms mapping is read as JSON
      from REALMS.

  Typed realm blocks: each realm is a RealmSettings model with named fields
      and defaults. Table and column names are validated once here, at
      startup, and never re-read per request.

Security notes:
  Table/column names end up in SQL identifiers. They are checked against
  _IDENTIFIER_RE so a hostile config value cannot smuggle SQL into a query.

Layer rule: core/ is the kernel. This module may not import from auth/.
"""

import logging
import re
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("realmauth.config")

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

_IDENTIFIER_FIELDS = (
    "users_table",
    "users_id_column",
    "users_username_column",
    "users_password_column",
    "roles_table",
    "roles_id_column",
    "roles_name_column",
    "user_roles_table",
    "user_roles_user_column",
    "user_roles_role_column",
)


class MemoryUser(BaseModel):
    """A user declared inline in a memory realm."""

    password_hash: str
    roles: list[str] = Field(default_factory=list)


class RealmSettings(BaseModel):
    """One authentication realm: which provider backs it and how to read it.

    Defaults match the suggested schema:
        users(id, username UNIQUE, password_hash)
        roles(id, role_name UNIQUE)
        user_roles(user_id, role_id)
    """

    provider: Literal["database", "memory"] = "database"
    # None means "use Settings.database_url"
    database_url: str | None = None

    roles_enabled: bool = True
    username_case_sensitive: bool = True

    users_table: str = "users"
    users_id_column: str = "id"
    users_username_column: str = "username"
    users_password_column: str = "password_hash"

    roles_table: str = "roles"
    roles_id_column: str = "id"
    roles_name_column: str = "role_name"

    user_roles_table: str = "user_roles"
    user_roles_user_column: str = "user_id"
    user_roles_role_column: str = "role_id"

    # Only read by the memory provider
    users: dict[str, MemoryUser] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_identifiers(self) -> "RealmSettings":
        for name in _IDENTIFIER_FIELDS:
            value = getattr(self, name)
            if not _IDENTIFIER_RE.match(value):
                raise ValueError(f"{name} must be a plain SQL identifier, got {value!r}")
        return self

    @field_validator("users")
    @classmethod
    def validate_usernames(cls, v: dict[str, MemoryUser]) -> dict[str, MemoryUser]:
        if any(not name for name in v):
            raise ValueError("memory realm usernames must be non-empty")
        return v


class Settings(BaseSettings):
    """Library settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///realmauth.db"
    # Upper bound for a single store call. None disables the bound.
    store_timeout_seconds: float | None = 5.0

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    password_scheme: str = "bcrypt"
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Realms
    # ------------------------------------------------------------------

    realms: dict[str, RealmSettings] = Field(default_factory=lambda: {"users": RealmSettings()})

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("DATABASE_URL must be set and non-empty")
        return v.strip()

    @field_validator("store_timeout_seconds")
    @classmethod
    def validate_store_timeout(cls, v: float | None) -> float | None:
        if v is not None and (v <= 0 or v > 300):
            raise ValueError("STORE_TIMEOUT_SECONDS must be greater than 0 and at most 300")
        return v

    @field_validator("password_scheme")
    @classmethod
    def validate_password_scheme(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("PASSWORD_SCHEME must be non-empty")
        if v != "bcrypt":
            # Unknown names are rejected later by PasswordVerifier
            logger.warning("PASSWORD_SCHEME=%s: new hashes will not use bcrypt", v)
        return v

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_bcrypt_rounds(cls, v: int) -> int:
        if v < 4 or v > 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31")
        return v

    @field_validator("realms")
    @classmethod
    def validate_realms(cls, v: dict[str, RealmSettings]) -> dict[str, RealmSettings]:
        if not v:
            raise ValueError("REALMS must define at least one realm")
        if any(not name or not name.strip() for name in v):
            raise ValueError("realm names must be non-empty")
        return v

    def database_url_for(self, realm: RealmSettings) -> str:
        """Return the connection URL a database realm should use."""
        return realm.database_url or self.database_url


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
