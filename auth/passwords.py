"""
auth/passwords.py -- Salted password hashing and verification.

Security design decisions:
  Default scheme: bcrypt, used directly (no passlib wrapper). Its cost factor
       makes brute force expensive for low-entropy secrets. Inputs are
       truncated to 72 bytes before hashing and checking; bcrypt ignores the
       tail anyway and bcrypt 4.1+ rejects longer inputs outright.

  Legacy schemes: RFC 2307 style salted digests as written by Perl's
       Crypt::SaltedHash, e.g. "{SSHA}" + base64(sha1(password + salt) + salt).
       These are verify-only in production: SHA-1 with a short salt is weak,
       so needs_rehash() reports True for them and callers can upgrade the
       stored hash after a successful login. hash() still produces them so
       fixtures and migration tooling can create legacy records.

  Hex digests: bare sha1/sha256 hexdigests as stored by DBIx::Class
       EncodedColumn (format => "hex"). Unsalted, verify for migration only.

  Comparison: salted and hex digests are compared with hmac.compare_digest, bcrypt
       with bcrypt.checkpw. Stored hashes are never compared as strings.

  Corrupt hashes: a stored value that matches no scheme, or that a scheme
       cannot decode, raises MalformedHashError. It is a data problem, not a
       failed login, and must not be reported as one.

  Timing equalization: check_dummy() runs the default scheme against a hash
       computed once per verifier so "no such user" costs the same as
       "wrong password".

Layer rule: no imports from core/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import re
import secrets
from typing import Protocol

import bcrypt

from auth.errors import ConfigurationError, MalformedHashError

logger = logging.getLogger("realmauth.passwords")

_BCRYPT_MAX_BYTES = 72
_DEFAULT_BCRYPT_ROUNDS = 12
_DEFAULT_SALT_LENGTH = 4  # Crypt::SaltedHash default

_LABEL_RE = re.compile(r"^\{(?P<label>[A-Z0-9]+)\}(?P<payload>.*)$", re.DOTALL)
_BCRYPT_RE = re.compile(r"^\$2[aby]\$(?P<rounds>\d{2})\$[./A-Za-z0-9]{53}$")


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")


class PasswordScheme(Protocol):
    """A password hashing scheme the verifier can dispatch to."""

    name: str

    def identify(self, stored: str) -> bool: ...

    def hash(self, plain: str) -> str: ...

    def verify(self, plain: str, stored: str) -> bool: ...


# ---------------------------------------------------------------------------
# bcrypt
# ---------------------------------------------------------------------------


class BcryptScheme:
    name = "bcrypt"

    def __init__(self, rounds: int = _DEFAULT_BCRYPT_ROUNDS) -> None:
        self.rounds = rounds

    def identify(self, stored: str) -> bool:
        return stored.startswith(("$2a$", "$2b$", "$2y$"))

    def hash(self, plain: str) -> str:
        pw_bytes = _encode(plain)[:_BCRYPT_MAX_BYTES]
        return bcrypt.hashpw(pw_bytes, bcrypt.gensalt(rounds=self.rounds)).decode("ascii")

    def verify(self, plain: str, stored: str) -> bool:
        if not _BCRYPT_RE.match(stored):
            raise MalformedHashError("stored bcrypt hash is malformed")
        pw_bytes = _encode(plain)[:_BCRYPT_MAX_BYTES]
        try:
            return bcrypt.checkpw(pw_bytes, stored.encode("ascii"))
        except ValueError as exc:
            raise MalformedHashError(f"stored bcrypt hash is malformed: {exc}") from exc

    def rounds_of(self, stored: str) -> int:
        match = _BCRYPT_RE.match(stored)
        if match is None:
            raise MalformedHashError("stored bcrypt hash is malformed")
        return int(match.group("rounds"))


# ---------------------------------------------------------------------------
# Legacy salted digests ({SSHA}, {SSHA256}, ...)
# ---------------------------------------------------------------------------


class SaltedDigestScheme:
    """RFC 2307 "{LABEL}base64(digest || salt)" hashes.

    An "S" prefix on the label means salted; the salt is whatever follows the
    digest in the decoded payload. Unsalted labels carry the digest only.
    """

    def __init__(self, algorithm: str, salted: bool = True, salt_length: int = _DEFAULT_SALT_LENGTH) -> None:
        self.algorithm = algorithm
        self.salted = salted
        self.salt_length = salt_length if salted else 0
        self.digest_size = hashlib.new(algorithm).digest_size
        suffix = "" if algorithm in ("sha1", "md5") else algorithm[3:]
        base = "MD5" if algorithm == "md5" else "SHA" + suffix
        self.label = ("S" if salted else "") + base
        self.name = self.label.lower()

    def identify(self, stored: str) -> bool:
        match = _LABEL_RE.match(stored)
        return match is not None and match.group("label") == self.label

    def hash(self, plain: str, salt: bytes | None = None) -> str:
        if salt is None:
            salt = secrets.token_bytes(self.salt_length)
        digest = hashlib.new(self.algorithm, _encode(plain) + salt).digest()
        return "{%s}%s" % (self.label, base64.b64encode(digest + salt).decode("ascii"))

    def verify(self, plain: str, stored: str) -> bool:
        match = _LABEL_RE.match(stored)
        if match is None or match.group("label") != self.label:
            raise MalformedHashError(f"not a {self.label} hash")
        try:
            raw = base64.b64decode(match.group("payload").strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedHashError(f"{self.label} payload is not valid base64") from exc
        if len(raw) < self.digest_size or (not self.salted and len(raw) != self.digest_size):
            raise MalformedHashError(f"{self.label} payload has the wrong length")
        expected, salt = raw[: self.digest_size], raw[self.digest_size :]
        actual = hashlib.new(self.algorithm, _encode(plain) + salt).digest()
        return hmac.compare_digest(actual, expected)


class HexDigestScheme:
    """Bare unsalted hex digests, e.g. sha1("please").hexdigest().

    Identified by length and alphabet alone, so only sha1 (40 chars) and
    sha256 (64 chars) are registered. Migration only: needs_rehash() is
    always True for these.
    """

    def __init__(self, algorithm: str) -> None:
        self.algorithm = algorithm
        self.hex_length = hashlib.new(algorithm).digest_size * 2
        self.name = f"hex_{algorithm}"
        self._pattern = re.compile(r"^[0-9a-fA-F]{%d}$" % self.hex_length)

    def identify(self, stored: str) -> bool:
        return self._pattern.match(stored) is not None

    def hash(self, plain: str) -> str:
        return hashlib.new(self.algorithm, _encode(plain)).hexdigest()

    def verify(self, plain: str, stored: str) -> bool:
        if not self.identify(stored):
            raise MalformedHashError(f"not a {self.name} hash")
        actual = hashlib.new(self.algorithm, _encode(plain)).hexdigest()
        return hmac.compare_digest(actual.encode("ascii"), stored.lower().encode("ascii"))


def _legacy_schemes() -> list[PasswordScheme]:
    schemes: list[PasswordScheme] = []
    for algorithm in ("sha1", "sha256", "sha384", "sha512", "md5"):
        schemes.append(SaltedDigestScheme(algorithm, salted=True))
        schemes.append(SaltedDigestScheme(algorithm, salted=False))
    schemes.extend(HexDigestScheme(algorithm) for algorithm in ("sha1", "sha256"))
    return schemes


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class PasswordVerifier:
    """Dispatches hash/verify calls to the scheme a stored hash was made with.

    Usage:
        verifier = PasswordVerifier()                   # bcrypt, 12 rounds
        stored = verifier.hash("please")
        verifier.check("please", stored)                # True
        verifier.check("please", "{SSHA}...")           # legacy hashes verify too
        verifier.needs_rehash("{SSHA}...")              # True

    Thread-safe: holds only immutable configuration after construction.
    """

    def __init__(
        self,
        default_scheme: str = "bcrypt",
        bcrypt_rounds: int = _DEFAULT_BCRYPT_ROUNDS,
        extra_schemes: list[PasswordScheme] | None = None,
    ) -> None:
        self._bcrypt = BcryptScheme(rounds=bcrypt_rounds)
        schemes: list[PasswordScheme] = [self._bcrypt, *_legacy_schemes(), *(extra_schemes or [])]
        self._schemes: dict[str, PasswordScheme] = {s.name: s for s in schemes}
        if default_scheme not in self._schemes:
            raise ConfigurationError(
                f"Unknown password scheme {default_scheme!r}; expected one of {sorted(self._schemes)}"
            )
        self.default_scheme = default_scheme
        self._dummy_hash = self.hash("realmauth_timing_dummy")

    @property
    def schemes(self) -> list[str]:
        return sorted(self._schemes)

    def identify(self, stored: str) -> PasswordScheme:
        """Return the scheme that produced stored, or raise MalformedHashError."""
        if not isinstance(stored, str) or not stored:
            raise MalformedHashError("stored password hash is empty")
        for scheme in self._schemes.values():
            if scheme.identify(stored):
                return scheme
        raise MalformedHashError("stored password hash uses an unrecognised format")

    def hash(self, plain: str, scheme: str | None = None) -> str:
        """Hash plain with the named scheme (default scheme when omitted)."""
        name = scheme or self.default_scheme
        try:
            return self._schemes[name].hash(plain)
        except KeyError:
            raise ConfigurationError(f"Unknown password scheme {name!r}") from None

    def check(self, plain: str, stored: str) -> bool:
        """Return True if plain matches stored.

        Raises MalformedHashError if stored cannot be parsed.
        """
        scheme = self.identify(stored)
        if isinstance(scheme, (SaltedDigestScheme, HexDigestScheme)):
            logger.debug("Verifying password against legacy %s hash", scheme.name)
        return scheme.verify(plain, stored)

    def check_dummy(self, plain: str) -> None:
        """Burn the same work as a real check. Result is always discarded."""
        self.check(plain, self._dummy_hash)

    def needs_rehash(self, stored: str) -> bool:
        """True when stored should be upgraded to the current default scheme."""
        scheme = self.identify(stored)
        if scheme.name != self.default_scheme:
            return True
        if scheme is self._bcrypt:
            return self._bcrypt.rounds_of(stored) < self._bcrypt.rounds
        return False


def hash_password(plain: str, scheme: str = "bcrypt", bcrypt_rounds: int = _DEFAULT_BCRYPT_ROUNDS) -> str:
    """Convenience wrapper for provisioning scripts and tests.

    Hashes through the scheme directly; no verifier (and no dummy hash) is built.
    """
    if scheme == BcryptScheme.name:
        return BcryptScheme(rounds=bcrypt_rounds).hash(plain)
    for candidate in _legacy_schemes():
        if candidate.name == scheme:
            return candidate.hash(plain)
    raise ConfigurationError(f"Unknown password scheme {scheme!r}")
