"""
auth/service.py -- Credential check and role resolution over two stores.

Flow:
    authenticate(username, password)
        -> UserStore.find_by_username
        -> PasswordVerifier.check        (dummy check when the user is missing)
        -> AuthOutcome(success, realm, user, reason)
    roles_for(user)
        -> RoleStore.roles_for           (sorted, de-duplicated)

Security:
  Timing equalization: when the username does not exist the verifier still
  runs against a dummy hash, so response time does not reveal whether an
  account exists. Do NOT add an early return before the verifier call.
  A user whose hash is due for upgrade (legacy digest, fewer bcrypt rounds)
  also pays for a dummy default-scheme check, so a cheap SHA-1 match cannot
  be told apart from a bcrypt "no such user".

  Unknown user and wrong password produce different FailureReason values for
  logging, but the same public_reason ("invalid_credentials").

Time budget:
  Every store call can be bounded by a timeout (seconds) and a cancellation
  token (threading.Event). Bounded calls run on a shared worker pool and the
  caller waits for at most the remaining budget. A call that runs out of time
  or is cancelled raises StoreTimeoutError; it is never reported as a failed
  login. The worker thread itself is not interrupted; the store's own
  driver timeout is what eventually frees it.

AuthService holds only its collaborators. One instance can be shared by any
number of threads.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TypeVar

from auth.errors import InfrastructureError, RolesDisabledError, StoreTimeoutError
from auth.models import AuthOutcome, FailureReason, User
from auth.passwords import PasswordVerifier
from auth.store import RoleStore, UserStore

logger = logging.getLogger("realmauth.service")

T = TypeVar("T")

# Poll interval while waiting on a bounded call, so cancellation is noticed
# promptly even with a long timeout.
_CANCEL_POLL_SECONDS = 0.05

_executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="realmauth-store")


class _Budget:
    """Remaining time and cancellation state for one service call."""

    def __init__(self, timeout: float | None, cancel: threading.Event | None) -> None:
        self.deadline = None if timeout is None else time.monotonic() + timeout
        self.cancel = cancel

    @property
    def bounded(self) -> bool:
        return self.deadline is not None or self.cancel is not None

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def check(self, store: str, operation: str) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise StoreTimeoutError("call cancelled", store=store, operation=operation)
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise StoreTimeoutError("time budget exhausted", store=store, operation=operation)


class AuthService:
    """Authenticate users and resolve their roles.

    Dependencies are injected; nothing is read from global configuration:
        service = AuthService(user_store, role_store, PasswordVerifier(), timeout=5.0)
        outcome = service.authenticate("bob", "please", realm="users")
        if outcome:
            roles = service.roles_for(outcome.user)

    role_store=None means the realm runs without roles; roles_for() then
    raises RolesDisabledError.
    """

    def __init__(
        self,
        user_store: UserStore,
        role_store: RoleStore | None,
        verifier: PasswordVerifier,
        *,
        timeout: float | None = None,
        realm: str | None = None,
    ) -> None:
        self.user_store = user_store
        self.role_store = role_store
        self.verifier = verifier
        self.timeout = timeout
        self.realm = realm

    @property
    def roles_enabled(self) -> bool:
        return self.role_store is not None

    # ------------------------------------------------------------------
    # Store calls
    # ------------------------------------------------------------------

    def _budget(self, timeout: float | None, cancel: threading.Event | None) -> _Budget:
        return _Budget(self.timeout if timeout is None else timeout, cancel)

    def _call(self, budget: _Budget, store: str, operation: str, fn: Callable[..., T], *args) -> T:
        try:
            budget.check(store, operation)
            if not budget.bounded:
                return fn(*args)
            future = _executor.submit(fn, *args)
            while True:
                remaining = budget.remaining()
                wait = _CANCEL_POLL_SECONDS if remaining is None else min(remaining, _CANCEL_POLL_SECONDS)
                try:
                    return future.result(timeout=max(wait, 0))
                except FutureTimeoutError:
                    try:
                        budget.check(store, operation)
                    except StoreTimeoutError:
                        future.cancel()
                        raise
        except InfrastructureError as exc:
            if exc.store is None:
                exc.store, exc.operation = store, operation
            logger.warning("Store error in realm %s during %s.%s: %s", self.realm, store, operation, exc.message)
            raise

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def find_user(
        self, username: str, *, timeout: float | None = None, cancel: threading.Event | None = None
    ) -> User | None:
        """Return the user record for username, or None."""
        if not username:
            return None
        budget = self._budget(timeout, cancel)
        return self._call(budget, "users", "find_by_username", self.user_store.find_by_username, username)

    def authenticate(
        self,
        username: str,
        password: str,
        realm: str | None = None,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> AuthOutcome:
        """Check username/password. Returns an AuthOutcome; never raises for bad credentials.

        Raises InfrastructureError (store down, timeout, corrupt hash) so the
        caller can render a service error instead of a login error.
        """
        realm = self.realm if realm is None else realm
        password = password or ""
        budget = self._budget(timeout, cancel)

        user = None
        if username:
            user = self._call(budget, "users", "find_by_username", self.user_store.find_by_username, username)

        if user is None:
            # Equalize timing -- do NOT return before running the verifier
            self.verifier.check_dummy(password)
            logger.info("Authentication failed for %r in realm %s: no such user", username, realm)
            return AuthOutcome(success=False, realm=realm, reason=FailureReason.NOT_FOUND)

        try:
            upgrade = self.verifier.needs_rehash(user.password_hash)
            matched = self.verifier.check(password, user.password_hash)
            if upgrade:
                # Legacy or weaker hashes are cheaper than the default scheme
                self.verifier.check_dummy(password)
        except InfrastructureError as exc:
            exc.store, exc.operation = "users", "check_password"
            logger.warning("Stored hash for %r in realm %s is unusable: %s", username, realm, exc.message)
            raise

        if not matched:
            logger.info("Authentication failed for %r in realm %s: password mismatch", username, realm)
            return AuthOutcome(success=False, realm=realm, reason=FailureReason.CREDENTIAL_MISMATCH)

        if upgrade:
            logger.warning("User %r in realm %s has a password hash due for upgrade", username, realm)
        return AuthOutcome(success=True, realm=realm, user=user)

    def roles_for(
        self, user: User, *, timeout: float | None = None, cancel: threading.Event | None = None
    ) -> tuple[str, ...]:
        """Return the user's role names as a sorted tuple (empty if none)."""
        if self.role_store is None:
            raise RolesDisabledError(self.realm)
        budget = self._budget(timeout, cancel)
        roles = self._call(budget, "roles", "roles_for", self.role_store.roles_for, user)
        return tuple(sorted(set(roles)))

    def user_has_role(
        self, user: User, role: str, *, timeout: float | None = None, cancel: threading.Event | None = None
    ) -> bool:
        return role in self.roles_for(user, timeout=timeout, cancel=cancel)
