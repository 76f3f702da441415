"""
auth/realms.py -- Multi-realm front end.

A realm is a named authentication scope ("users", "admins", ...) backed by
its own provider. Authenticator builds one AuthService per configured realm
at startup and routes calls to them:

    authenticator = Authenticator.from_settings(get_settings())
    outcome = authenticator.authenticate("bob", "please")           # any realm
    outcome = authenticator.authenticate("bob", "please", "users")  # one realm
    authenticator.user_roles("bob")                                 # ("overlord",)
    authenticator.close()

Without an explicit realm, realms are tried in configuration order and the
first success wins; its name is reported in AuthOutcome.realm. An
infrastructure error in any realm stops the search and propagates, so a
down database is never mistaken for "wrong password".

Startup is fail-fast: an unusable realm configuration raises
ConfigurationError from from_settings(), not on the first request.
"""

from __future__ import annotations

import logging
import threading

from sqlalchemy.engine import Engine

from auth.errors import UnknownRealmError
from auth.models import AuthOutcome, FailureReason, User
from auth.passwords import PasswordVerifier
from auth.providers import CredentialProvider, build_provider
from auth.service import AuthService
from auth.store import create_store_engine
from core.config import Settings

logger = logging.getLogger("realmauth.realms")


class Authenticator:
    """Routes authentication and role lookups across named realms."""

    def __init__(
        self,
        services: dict[str, AuthService],
        engines: list[Engine] | None = None,
        providers: list[CredentialProvider] | None = None,
    ) -> None:
        if not services:
            raise ValueError("at least one realm is required")
        self._services = dict(services)
        self._engines = list(engines or [])
        self._providers = list(providers or [])

    @classmethod
    def from_settings(cls, settings: Settings, verify_schema: bool = True) -> "Authenticator":
        """Build every configured realm. Raises ConfigurationError on a bad realm."""
        verifier = PasswordVerifier(default_scheme=settings.password_scheme, bcrypt_rounds=settings.bcrypt_rounds)
        engines: dict[str, Engine] = {}
        services: dict[str, AuthService] = {}
        providers: list[CredentialProvider] = []
        try:
            for name, realm in settings.realms.items():
                engine = None
                if realm.provider == "database":
                    url = settings.database_url_for(realm)
                    if url not in engines:
                        engines[url] = create_store_engine(url, timeout=settings.store_timeout_seconds)
                    engine = engines[url]
                provider = build_provider(name, realm, engine=engine, verify_schema=verify_schema)
                providers.append(provider)
                services[name] = AuthService(
                    provider.user_store,
                    provider.role_store,
                    verifier,
                    timeout=settings.store_timeout_seconds,
                    realm=name,
                )
                logger.info("Realm %s ready (provider=%s, roles=%s)", name, realm.provider, realm.roles_enabled)
        except Exception:
            for provider in providers:
                provider.close()
            for engine in engines.values():
                engine.dispose()
            raise
        return cls(services, list(engines.values()), providers)

    @property
    def realms(self) -> list[str]:
        return list(self._services)

    def realm(self, name: str) -> AuthService:
        try:
            return self._services[name]
        except KeyError:
            raise UnknownRealmError(name) from None

    def _targets(self, realm: str | None) -> list[tuple[str, AuthService]]:
        if realm is not None:
            return [(realm, self.realm(realm))]
        return list(self._services.items())

    def authenticate(
        self,
        username: str,
        password: str,
        realm: str | None = None,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> AuthOutcome:
        """Authenticate in one realm, or in each realm in turn until one succeeds.

        When every realm fails, the reason is CREDENTIAL_MISMATCH if any realm
        knew the username, NOT_FOUND otherwise.
        """
        reason = FailureReason.NOT_FOUND
        for name, service in self._targets(realm):
            outcome = service.authenticate(username, password, name, timeout=timeout, cancel=cancel)
            if outcome.success:
                return outcome
            if outcome.reason is FailureReason.CREDENTIAL_MISMATCH:
                reason = FailureReason.CREDENTIAL_MISMATCH
        return AuthOutcome(success=False, realm=realm, reason=reason)

    def get_user_details(self, username: str, realm: str | None = None) -> User | None:
        """Return the first matching user record, searching realms in order."""
        for _name, service in self._targets(realm):
            user = service.find_user(username)
            if user is not None:
                return user
        return None

    def user_roles(self, username: str, realm: str | None = None) -> tuple[str, ...]:
        """Return the roles of username in the first realm that knows the user.

        Empty tuple if no realm knows the user. Raises RolesDisabledError if
        that realm has roles switched off.
        """
        for _name, service in self._targets(realm):
            user = service.find_user(username)
            if user is not None:
                return service.roles_for(user)
        return ()

    def user_has_role(self, username: str, role: str, realm: str | None = None) -> bool:
        return role in self.user_roles(username, realm)

    def close(self) -> None:
        """Close every provider, then dispose the shared engines."""
        for provider in self._providers:
            provider.close()
        self._providers.clear()
        for engine in self._engines:
            engine.dispose()
        self._engines.clear()
