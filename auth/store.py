"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the user-directory and credential repository; SqlTokenStore is the
relational TokenStore backing. _row_to_* functions are the mappers. Service and
route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Password hashes live in `credentials`, not `users`, so directory reads never
  select them.
  Token rows hold HMAC hashes of token values, never the values themselves.

Consistency:
  Every method runs in its own engine.begin() transaction and commits before
  returning, so a put/revoke that returns has been flushed, and one that raised
  left nothing behind. Reads happen on fresh connections and see committed
  state only.

  Driver failures (lock timeouts, lost connections) are re-raised as
  StoreUnavailableError. IntegrityError on a token insert becomes
  DuplicateTokenError.

  The admin_bootstrap table is a single-row guard (CHECK id = 1). The first
  admin insert and the guard row are written in one transaction, so two racing
  bootstrap calls cannot both succeed.

DB path default: ./doorpro_auth.db (override with AUTH_DB_URL).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import AlreadyBootstrappedError, DuplicateTokenError, StoreUnavailableError
from auth.models import Credential, Token, TokenType, User
from auth.token_store import TokenStore, from_millis, to_millis

logger = logging.getLogger("doorpro.auth.store")

_DEFAULT_DB_URL = "sqlite:///./doorpro_auth.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, index=True, server_default=""),
    Column("full_name", String(255), nullable=False, server_default=""),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_credentials = Table(
    "credentials",
    _metadata,
    Column("user_id", Integer, primary_key=True),
    Column("password_hash", Text, nullable=False),
    Column("hash_algorithm", String(30), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_tokens = Table(
    "tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True, index=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_type", String(32), nullable=False),
    Column("issued_at", BigInteger, nullable=False),  # epoch millis
    Column("expires_at", BigInteger, nullable=False, index=True),  # epoch millis
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("origin_ip", String(45)),
    Column("user_agent", Text),
)

_admin_bootstrap = Table(
    "admin_bootstrap",
    _metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL lets readers proceed while a writer commits, so token verification
    does not stall behind issuance. Set per-connection because SQLite PRAGMAs
    are not inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str, timeout: float) -> Engine:
    connect_args: dict = {}
    engine_kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        # sqlite3 busy timeout: how long a writer waits for a competing lock.
        connect_args["timeout"] = timeout
    else:
        engine_kwargs["pool_timeout"] = timeout
        engine_kwargs["pool_pre_ping"] = True
    engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _SqlRepository:
    """Shared engine ownership and error translation for both repositories."""

    def __init__(self, db_url: str, timeout: float) -> None:
        self.engine: Engine = _make_engine(db_url, timeout)
        try:
            _metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"auth database unavailable: {exc}") from exc

    @contextmanager
    def _tx(self) -> Iterator[Connection]:
        """Yield a connection inside a transaction that commits on exit.

        IntegrityError passes through untouched so callers can map it to a
        domain error. Any other SQLAlchemy failure means the store is not
        usable right now.
        """
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Auth store operation failed: %s", exc.__class__.__name__)
            raise StoreUnavailableError(str(exc)) from exc

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# User directory + credentials
# ---------------------------------------------------------------------------


class UserStore(_SqlRepository):
    """Repository for User and Credential entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="rep1", role="user"), hash_password("secret"), "bcrypt")
        user = store.get_by_username("rep1")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout: float = 5.0) -> None:
        super().__init__(db_url, timeout)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, password_hash: str, hash_algorithm: str) -> int:
        """Insert a user and its credential in one transaction; return the new ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self._tx() as conn:
            return self._insert_user(conn, user, password_hash, hash_algorithm)

    def create_bootstrap_admin(self, user: User, password_hash: str, hash_algorithm: str) -> int:
        """Create the first admin. Raises AlreadyBootstrappedError if one exists.

        The existence check and the guard-row insert share a transaction. A
        concurrent caller that slips past the check still fails on the guard
        row's primary key.
        """
        try:
            with self._tx() as conn:
                existing = conn.execute(
                    select(func.count()).select_from(_users).where(_users.c.role == "admin")
                ).scalar()
                if existing:
                    raise AlreadyBootstrappedError("an admin user already exists")
                user_id = self._insert_user(conn, user, password_hash, hash_algorithm)
                conn.execute(_admin_bootstrap.insert().values(id=1, user_id=user_id, created_at=_now_iso()))
                return user_id
        except IntegrityError as exc:
            raise AlreadyBootstrappedError("admin bootstrap already performed") from exc

    def _insert_user(self, conn: Connection, user: User, password_hash: str, hash_algorithm: str) -> int:
        now = _now_iso()
        result = conn.execute(
            _users.insert().values(
                username=user.username,
                email=user.email,
                full_name=user.full_name,
                role=user.role,
                is_active=1 if user.is_active else 0,
                email_verified=1 if user.email_verified else 0,
                created_at=now,
            )
        )
        user_id = result.inserted_primary_key[0]
        conn.execute(
            _credentials.insert().values(
                user_id=user_id,
                password_hash=password_hash,
                hash_algorithm=hash_algorithm,
                updated_at=now,
            )
        )
        return user_id

    def has_admin(self) -> bool:
        with self._tx() as conn:
            result = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.role == "admin")
            ).scalar()
        return (result or 0) > 0

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self._tx() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively."""
        with self._tx() as conn:
            row = conn.execute(
                _users.select().where(func.lower(_users.c.email) == email.lower()).order_by(_users.c.id)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self._tx() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields (role, is_active, email_verified, email, full_name).

        Booleans are converted to int for SQLite. Returns False if no such user.
        """
        for key in ("is_active", "email_verified"):
            if key in fields:
                fields[key] = 1 if fields[key] else 0
        with self._tx() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self._tx() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def get_credential(self, user_id: int) -> Credential | None:
        with self._tx() as conn:
            row = conn.execute(_credentials.select().where(_credentials.c.user_id == user_id)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def set_credential(self, user_id: int, password_hash: str, hash_algorithm: str) -> None:
        """Replace the stored password hash for a user (password change, rehash)."""
        with self._tx() as conn:
            result = conn.execute(
                _credentials.update()
                .where(_credentials.c.user_id == user_id)
                .values(password_hash=password_hash, hash_algorithm=hash_algorithm, updated_at=_now_iso())
            )
            if result.rowcount == 0:
                conn.execute(
                    _credentials.insert().values(
                        user_id=user_id,
                        password_hash=password_hash,
                        hash_algorithm=hash_algorithm,
                        updated_at=_now_iso(),
                    )
                )


# ---------------------------------------------------------------------------
# Relational token backing
# ---------------------------------------------------------------------------


class SqlTokenStore(_SqlRepository, TokenStore):
    """TokenStore backed by the `tokens` table.

    revoke() is a single-row conditional UPDATE, so concurrent revoke/get on
    one token is linearized by the database. purge() deletes in batches of
    batch_size, one committed transaction per batch.
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout: float = 5.0, batch_size: int = 500) -> None:
        super().__init__(db_url, timeout)
        self.batch_size = batch_size

    def put(self, token: Token) -> None:
        try:
            with self._tx() as conn:
                conn.execute(
                    _tokens.insert().values(
                        token_hash=token.token_hash,
                        user_id=token.user_id,
                        token_type=token.token_type.value,
                        issued_at=to_millis(token.issued_at),
                        expires_at=to_millis(token.expires_at),
                        revoked=1 if token.revoked else 0,
                        origin_ip=token.origin_ip,
                        user_agent=token.user_agent,
                    )
                )
        except IntegrityError as exc:
            raise DuplicateTokenError("token hash already present") from exc

    def get(self, token_hash: str) -> Token | None:
        with self._tx() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_token(row) if row is not None else None

    def revoke(self, token_hash: str) -> bool:
        with self._tx() as conn:
            result = conn.execute(
                _tokens.update()
                .where((_tokens.c.token_hash == token_hash) & (_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount > 0

    def purge(self, before: datetime, revoked_only: bool = False) -> int:
        condition = _tokens.c.revoked == 1
        if not revoked_only:
            condition = condition | (_tokens.c.expires_at <= to_millis(before))
        removed = 0
        while True:
            with self._tx() as conn:
                ids = conn.execute(select(_tokens.c.id).where(condition).limit(self.batch_size)).scalars().all()
                if not ids:
                    break
                # Condition repeated so a row changed since the SELECT is left alone.
                result = conn.execute(_tokens.delete().where(_tokens.c.id.in_(ids) & condition))
                removed += result.rowcount
            if len(ids) < self.batch_size:
                break
        return removed

    def list_by_user(self, user_id: int) -> list[Token]:
        with self._tx() as conn:
            rows = conn.execute(
                _tokens.select().where(_tokens.c.user_id == user_id).order_by(_tokens.c.issued_at)
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def count(self) -> int:
        with self._tx() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM tokens")).scalar()
        return result or 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        full_name=row.full_name,
        role=row.role,
        is_active=bool(row.is_active),
        email_verified=bool(row.email_verified),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_credential(row) -> Credential:
    return Credential(
        user_id=row.user_id,
        password_hash=row.password_hash,
        hash_algorithm=row.hash_algorithm,
        updated_at=row.updated_at,
    )


def _row_to_token(row) -> Token:
    return Token(
        id=row.id,
        token_hash=row.token_hash,
        user_id=row.user_id,
        token_type=TokenType(row.token_type),
        issued_at=from_millis(row.issued_at),
        expires_at=from_millis(row.expires_at),
        revoked=bool(row.revoked),
        origin_ip=row.origin_ip,
        user_agent=row.user_agent,
    )
