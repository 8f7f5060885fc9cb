"""
auth/token_store.py -- Token persistence interface plus memory and file backings.

Pattern: Strategy. TokenStore is the one interface the issuer, verifier and
revocation service talk to. The concrete backing is picked by configuration in
build_token_store(), never by which module a caller happens to import:

  memory   MemoryTokenStore  -- dict guarded by a lock. Lost on restart, so
                                Settings only allows it with DEBUG=true.
  file     FileTokenStore    -- MemoryTokenStore plus a JSON journal rewritten
                                atomically on every mutation.
  sql      SqlTokenStore     -- SQLAlchemy Core table (auth/store.py).

Every store is keyed by token hash, not by the raw token value.

Concurrency:
  Per-key operations (put/get/revoke) take the lock once and are linearizable.
  purge() snapshots candidate keys, then deletes them in batches of batch_size,
  re-checking each candidate under the lock. Verify calls interleave between
  batches instead of waiting behind a full scan.

  Lock acquisition is bounded by timeout; a timeout surfaces as
  StoreUnavailableError so callers never confuse "store busy" with "token
  invalid".

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from auth.errors import DuplicateTokenError, StoreUnavailableError
from auth.models import Token, TokenType

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("doorpro.auth.store")

_DEFAULT_TIMEOUT = 5.0
_DEFAULT_BATCH_SIZE = 500


# ---------------------------------------------------------------------------
# Timestamp helpers -- all backings persist epoch milliseconds
# ---------------------------------------------------------------------------


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)


def to_millis(value: datetime) -> int:
    return (value - _EPOCH) // _MILLISECOND


def from_millis(value: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=value)


def _purgeable(token: Token, before: datetime, revoked_only: bool) -> bool:
    if token.revoked:
        return True
    return not revoked_only and token.expires_at <= before


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class TokenStore:
    """Abstract token persistence contract.

    Implementations must make put() and revoke() durable before returning and
    visible to every later get() from any thread.
    """

    def put(self, token: Token) -> None:
        """Insert a new record. Raises DuplicateTokenError if the hash exists."""
        raise NotImplementedError

    def get(self, token_hash: str) -> Token | None:
        """Return the record for token_hash, or None if absent."""
        raise NotImplementedError

    def revoke(self, token_hash: str) -> bool:
        """Mark a record revoked.

        Idempotent: revoking an unknown or already revoked token is not an
        error. Returns True only if this call performed the transition, which
        lets single-use flows treat revoke() as a compare-and-set.
        """
        raise NotImplementedError

    def purge(self, before: datetime, revoked_only: bool = False) -> int:
        """Hard-delete every revoked record, and unless revoked_only, every
        record whose expires_at is at or before `before`. Returns rows removed.
        """
        raise NotImplementedError

    def list_by_user(self, user_id: int) -> list[Token]:
        raise NotImplementedError

    def count(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        """Release resources. The default store holds none."""


# ---------------------------------------------------------------------------
# In-memory backing
# ---------------------------------------------------------------------------


class MemoryTokenStore(TokenStore):
    """Thread-safe dict-backed store for tests and local development.

    Usage:
        store = MemoryTokenStore()
        store.put(token)
        store.get(token.token_hash)
    """

    def __init__(self, timeout: float = _DEFAULT_TIMEOUT, batch_size: int = _DEFAULT_BATCH_SIZE) -> None:
        self.timeout = timeout
        self.batch_size = batch_size
        self._lock = threading.Lock()
        self._tokens: dict[str, Token] = {}
        self._by_user: dict[int, set[str]] = {}

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            raise StoreUnavailableError(f"token store lock not acquired within {self.timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    # Mutation hooks. FileTokenStore overrides _commit() to journal to disk.

    def _commit(self) -> None:
        pass

    def _insert(self, token: Token) -> None:
        self._tokens[token.token_hash] = token
        self._by_user.setdefault(token.user_id, set()).add(token.token_hash)

    def _remove(self, token_hash: str) -> Token | None:
        token = self._tokens.pop(token_hash, None)
        if token is not None:
            hashes = self._by_user.get(token.user_id)
            if hashes is not None:
                hashes.discard(token_hash)
                if not hashes:
                    del self._by_user[token.user_id]
        return token

    # Contract

    def put(self, token: Token) -> None:
        with self._locked():
            if token.token_hash in self._tokens:
                raise DuplicateTokenError("token hash already present")
            self._insert(replace(token))
            try:
                self._commit()
            except StoreUnavailableError:
                self._remove(token.token_hash)
                raise

    def get(self, token_hash: str) -> Token | None:
        with self._locked():
            token = self._tokens.get(token_hash)
            return replace(token) if token is not None else None

    def revoke(self, token_hash: str) -> bool:
        with self._locked():
            token = self._tokens.get(token_hash)
            if token is None or token.revoked:
                return False
            token.revoked = True
            try:
                self._commit()
            except StoreUnavailableError:
                token.revoked = False
                raise
            return True

    def purge(self, before: datetime, revoked_only: bool = False) -> int:
        with self._locked():
            snapshot = list(self._tokens.items())
        candidates = [h for h, t in snapshot if _purgeable(t, before, revoked_only)]
        removed = 0
        for start in range(0, len(candidates), self.batch_size):
            batch = candidates[start : start + self.batch_size]
            with self._locked():
                dropped: list[Token] = []
                for token_hash in batch:
                    token = self._tokens.get(token_hash)
                    # Re-check: the record may have changed since the snapshot.
                    if token is not None and _purgeable(token, before, revoked_only):
                        dropped.append(self._remove(token_hash))
                if not dropped:
                    continue
                try:
                    self._commit()
                except StoreUnavailableError:
                    for token in dropped:
                        self._insert(token)
                    raise
                removed += len(dropped)
        return removed

    def list_by_user(self, user_id: int) -> list[Token]:
        with self._locked():
            hashes = self._by_user.get(user_id, ())
            tokens = [replace(self._tokens[h]) for h in hashes]
        return sorted(tokens, key=lambda t: t.issued_at)

    def count(self) -> int:
        with self._locked():
            return len(self._tokens)


# ---------------------------------------------------------------------------
# File-journal backing
# ---------------------------------------------------------------------------


class FileTokenStore(MemoryTokenStore):
    """MemoryTokenStore persisted to a single JSON file.

    File layout: one JSON object mapping token hash -> record, with issued_at
    and expires_at as epoch milliseconds:

        {"9f2c...": {"user_id": 1, "token_type": "session",
                     "issued_at": 1760000000000, "expires_at": 1760086400000,
                     "revoked": false, "origin_ip": null, "user_agent": null}}

    Every mutation rewrites the whole file (temp file in the same directory,
    fsync, os.replace) while still holding the lock, so a reader of the file
    sees either the old or the new state and never a partial write. If the
    write fails the in-memory change is rolled back and the caller gets
    StoreUnavailableError -- a token that was not persisted is never usable.
    """

    def __init__(
        self,
        path: str | Path,
        timeout: float = _DEFAULT_TIMEOUT,
        batch_size: int = _DEFAULT_BATCH_SIZE,
    ) -> None:
        super().__init__(timeout=timeout, batch_size=batch_size)
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            for token_hash, record in raw.items():
                self._insert(_record_to_token(token_hash, record))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise StoreUnavailableError(f"token file {self.path} is unreadable: {exc}") from exc
        logger.info("Loaded %d tokens from %s", len(self._tokens), self.path)

    def _commit(self) -> None:
        payload = {h: _token_to_record(t) for h, t in self._tokens.items()}
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".tokens-", suffix=".tmp", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            logger.error("Token file write failed for %s: %s", self.path, exc)
            raise StoreUnavailableError(f"token file {self.path} could not be written") from exc


def _token_to_record(token: Token) -> dict:
    return {
        "user_id": token.user_id,
        "token_type": token.token_type.value,
        "issued_at": to_millis(token.issued_at),
        "expires_at": to_millis(token.expires_at),
        "revoked": token.revoked,
        "origin_ip": token.origin_ip,
        "user_agent": token.user_agent,
    }


def _record_to_token(token_hash: str, record: dict) -> Token:
    return Token(
        token_hash=token_hash,
        user_id=int(record["user_id"]),
        token_type=TokenType(record["token_type"]),
        issued_at=from_millis(record["issued_at"]),
        expires_at=from_millis(record["expires_at"]),
        revoked=bool(record.get("revoked", False)),
        origin_ip=record.get("origin_ip"),
        user_agent=record.get("user_agent"),
    )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_token_store(settings: Settings) -> TokenStore:
    """Construct the backing selected by settings.token_backend."""
    backend = settings.token_backend
    if backend == "memory":
        logger.warning("Using in-memory token store -- sessions will not survive restart")
        return MemoryTokenStore(timeout=settings.store_timeout_seconds, batch_size=settings.sweep_batch_size)
    if backend == "file":
        return FileTokenStore(
            settings.token_file_path,
            timeout=settings.store_timeout_seconds,
            batch_size=settings.sweep_batch_size,
        )
    if backend == "sql":
        from auth.store import SqlTokenStore

        return SqlTokenStore(
            db_url=settings.auth_db_url,
            timeout=settings.store_timeout_seconds,
            batch_size=settings.sweep_batch_size,
        )
    raise ValueError(f"Unknown token backend: {backend!r}")
