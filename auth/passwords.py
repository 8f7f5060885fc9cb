"""
auth/passwords.py -- Password hashing and verification.

Two stored formats exist:

  bcrypt   "$2b$12$..." -- the only format written by this codebase. Cost
           factor comes from Settings.bcrypt_rounds (default 12).

  legacy   "<salt>:<hash>" -- records migrated from the previous DoorPro server.
           salt is 32 lowercase hex chars and is fed to PBKDF2 as its UTF-8
           text, not as decoded bytes. hash is PBKDF2-HMAC-SHA512, 10000
           iterations, 64-byte output, hex encoded. Verify-only: login rewrites
           these to bcrypt on the next successful attempt (see needs_rehash).

Format dispatch is an explicit tagged check in identify_hash(). A stored value
that matches neither shape is treated as "no match", never as an error, because
stored hashes can end up attacker-influenced via imports.

bcrypt is used directly rather than through passlib: passlib's wrap-bug self-test
hashes a password longer than 72 bytes, which bcrypt 4.x rejects.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re

import bcrypt

from auth.errors import WeakInputError
from core.config import get_settings

logger = logging.getLogger("doorpro.auth.passwords")

_settings = get_settings()

BCRYPT = "bcrypt"
LEGACY_PBKDF2 = "pbkdf2_sha512"

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
_BCRYPT_RE = re.compile(r"^\$2[aby]\$(\d{2})\$[./A-Za-z0-9]{53}$")
_LEGACY_RE = re.compile(r"^[0-9a-f]{32}:[0-9a-f]{128}$")

_LEGACY_ITERATIONS = 10000
_LEGACY_KEY_LENGTH = 64
_BCRYPT_MAX_BYTES = 72


def identify_hash(stored: str) -> str | None:
    """Return BCRYPT, LEGACY_PBKDF2, or None for an unrecognised value."""
    if stored.startswith(_BCRYPT_PREFIXES):
        return BCRYPT if _BCRYPT_RE.match(stored) else None
    if _LEGACY_RE.match(stored):
        return LEGACY_PBKDF2
    return None


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises WeakInputError for an empty password or one longer than bcrypt's
    72-byte input limit (bcrypt would otherwise truncate or refuse it).
    """
    if not plain:
        raise WeakInputError("Password must not be empty.")
    encoded = plain.encode("utf-8")
    if len(encoded) > _BCRYPT_MAX_BYTES:
        raise WeakInputError("Password must be at most 72 bytes.")
    cost = rounds if rounds is not None else _settings.bcrypt_rounds
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, stored: str) -> bool:
    """Return True if the plaintext matches the stored hash, in either format.

    Returns False for malformed or unrecognised stored values. A None stored
    hash is a programming error (the caller skipped the "no credential" branch)
    and raises TypeError.
    """
    if stored is None:
        raise TypeError("stored hash must not be None")
    if plain is None:
        return False
    fmt = identify_hash(stored)
    if fmt == BCRYPT:
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), stored.encode("utf-8"))
        except ValueError:
            return False
    if fmt == LEGACY_PBKDF2:
        return _verify_legacy(plain, stored)
    logger.warning("Unrecognised password hash format (len=%d)", len(stored))
    return False


def needs_rehash(stored: str, rounds: int | None = None) -> bool:
    """True when a stored hash should be replaced with a fresh bcrypt hash.

    Legacy PBKDF2 hashes always qualify. bcrypt hashes qualify when their
    cost factor differs from the configured one.
    """
    fmt = identify_hash(stored)
    if fmt == LEGACY_PBKDF2:
        return True
    if fmt == BCRYPT:
        cost = rounds if rounds is not None else _settings.bcrypt_rounds
        return int(stored[4:6]) != cost
    return False


def _verify_legacy(plain: str, stored: str) -> bool:
    salt, expected = stored.split(":", 1)
    derived = hashlib.pbkdf2_hmac(
        "sha512",
        plain.encode("utf-8"),
        salt.encode("utf-8"),
        _LEGACY_ITERATIONS,
        dklen=_LEGACY_KEY_LENGTH,
    )
    return hmac.compare_digest(derived.hex(), expected)


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Login always runs verify_password() even when the
# username does not exist, so response time does not reveal which usernames exist.
DUMMY_HASH: str = hash_password("doorpro_timing_dummy")
