"""
auth/store.py -- Persistence layer for identities, verification tokens and sessions.

Pattern: Repository + Data Mapper behind an explicit interface.
AuthStore is the abstract repository; SQLAuthStore and MemoryAuthStore are the
two backends, picked once at startup by open_store(). Nothing downstream ever
inspects which backend it holds. _row_to_* functions are the mappers. Service
and route code never touches SQL directly.

Backends:
  SQLAuthStore    -- SQLAlchemy Core. SQLite (WAL mode) or PostgreSQL; the
                     choice between those two is a URL change, not a rewrite.
  MemoryAuthStore -- dicts behind a lock. Development and tests only: state
                     dies with the process.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Password hashes and token hashes are never logged from this module.

Concurrency:
  No application-level locking in SQLAuthStore. Correctness under duplicate
  concurrent requests rests on the database: UNIQUE(identifier) for creation,
  and `UPDATE ... WHERE id = ? AND version = ?` for credential updates
  (rowcount 0 -> the caller raises EditConflictError).

Timeouts:
  Every call is bounded by timeout seconds. SQLite: busy timeout. PostgreSQL:
  statement_timeout plus connect and pool checkout timeouts. Memory: lock
  acquisition timeout. Expiry surfaces as StoreTimeoutError.

Timestamps are stored as fixed-width ISO 8601 UTC strings so lexical order
equals chronological order on every backend.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

import copy
import json
import logging
import math
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterator, Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import DuplicateIdentifierError, StorageError, StoreTimeoutError
from auth.models import Identity, Verification, utcnow

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("keyway.store")

_DEFAULT_TIMEOUT = 3.0

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(254), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("version", Integer, nullable=False, server_default="1"),
)

_verifications = Table(
    "verifications",
    _metadata,
    Column("token_hash", String(64), primary_key=True),  # SHA-256 hex
    Column("identifier", String(254), nullable=False, index=True),
    Column("expiry", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("token", String(64), primary_key=True),
    Column("data", Text, nullable=False),  # JSON object
    Column("expiry", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class AuthStore(ABC):
    """Storage contract shared by both backends.

    Plain values in, domain dataclasses out. Returns None for "no such row";
    the credential store and ledger turn that into NotFoundError. The only
    domain error raised here is DuplicateIdentifierError, because only the
    backend can see a unique-constraint violation.
    """

    # Identities

    @abstractmethod
    def insert_identity(self, identity: Identity) -> Identity:
        """Persist a new identity and return it with id and created_at set."""

    @abstractmethod
    def get_identity_by_id(self, identity_id: int) -> Optional[Identity]: ...

    @abstractmethod
    def get_identity_by_identifier(self, identifier: str) -> Optional[Identity]: ...

    @abstractmethod
    def identity_exists(self, identity_id: int) -> bool: ...

    @abstractmethod
    def identifier_exists(self, identifier: str) -> bool: ...

    @abstractmethod
    def update_identity(self, identity: Identity) -> bool:
        """Write identifier and password_hash if the stored version still matches.

        Returns False when no row was affected (unknown id or version moved).
        On success identity.version is advanced to the stored value.
        """

    # Verifications

    @abstractmethod
    def insert_verification(self, verification: Verification) -> None: ...

    @abstractmethod
    def latest_verification(self, identifier: str, now: datetime) -> Optional[Verification]:
        """Return the newest row for identifier whose expiry is after now."""

    @abstractmethod
    def get_verification(self, token_hash: str, identifier: str) -> Optional[Verification]:
        """Return the row matching BOTH token_hash and identifier, expired or not."""

    @abstractmethod
    def delete_verifications(self, identifier: str) -> int:
        """Delete every row for identifier. Returns the number of rows removed."""

    # Sessions

    @abstractmethod
    def save_session(self, token: str, data: dict, expiry: datetime) -> None: ...

    @abstractmethod
    def load_session(self, token: str, now: datetime) -> Optional[dict]: ...

    @abstractmethod
    def delete_session(self, token: str) -> None: ...

    @abstractmethod
    def purge_expired_sessions(self, now: datetime) -> int: ...

    # Lifecycle

    @abstractmethod
    def ping(self) -> bool: ...

    @abstractmethod
    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# SQLAlchemy backend
# ---------------------------------------------------------------------------


class SQLAuthStore(AuthStore):
    """SQLAlchemy Core backend.

    Usage:
        store = SQLAuthStore()                                  # SQLite default
        store = SQLAuthStore("postgresql+psycopg://user:pw@host/db")
        identity = store.insert_identity(Identity(identifier="a@example.com", password_hash=h))
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///keyway.db", timeout: float = _DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout
        engine_args: dict = {}
        connect_args: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout
        else:
            connect_args["connect_timeout"] = max(1, math.ceil(timeout))
            if db_url.startswith("postgresql"):
                connect_args["options"] = f"-c statement_timeout={int(timeout * 1000)}"
            engine_args["pool_timeout"] = timeout
            engine_args["pool_pre_ping"] = True
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_args)
        if is_sqlite:
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    @contextmanager
    def _connect(self) -> Iterator:
        """Yield a connection, translating timeouts into StoreTimeoutError.

        SQLite reports an exhausted busy timeout as "database is locked";
        PostgreSQL reports statement_timeout as "canceling statement due to
        statement timeout". Every other OperationalError propagates as-is.
        """
        try:
            with self.engine.connect() as conn:
                yield conn
        except PoolTimeoutError as exc:
            raise StoreTimeoutError(f"connection pool checkout exceeded {self.timeout}s") from exc
        except OperationalError as exc:
            message = str(exc.orig).lower()
            if "database is locked" in message or "statement timeout" in message:
                raise StoreTimeoutError(f"store call exceeded {self.timeout}s") from exc
            raise

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def insert_identity(self, identity: Identity) -> Identity:
        """Insert a new identity.

        Raises DuplicateIdentifierError if the identifier already exists. Two
        concurrent signups for the same address both reach this INSERT; the
        UNIQUE constraint lets exactly one through.
        """
        created_at = utcnow()
        try:
            with self._connect() as conn:
                result = conn.execute(
                    _identities.insert().values(
                        identifier=identity.identifier,
                        password_hash=identity.password_hash,
                        created_at=_iso(created_at),
                        version=1,
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise DuplicateIdentifierError(identity.identifier) from exc
        identity.id = result.inserted_primary_key[0]
        identity.created_at = created_at
        identity.version = 1
        return identity

    def get_identity_by_id(self, identity_id: int) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_identity_by_identifier(self, identifier: str) -> Optional[Identity]:
        """Look up an identity by exact identifier (case-sensitive)."""
        with self._connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.identifier == identifier)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def identity_exists(self, identity_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(select(_identities.c.id).where(_identities.c.id == identity_id)).fetchone()
        return row is not None

    def identifier_exists(self, identifier: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                select(_identities.c.id).where(_identities.c.identifier == identifier)
            ).fetchone()
        return row is not None

    def update_identity(self, identity: Identity) -> bool:
        """Compare-and-swap on version.

        The WHERE clause carries the version read earlier. If another request
        updated the row in between, the version no longer matches, rowcount
        is 0, and this write is rejected instead of silently clobbering.
        """
        try:
            with self._connect() as conn:
                result = conn.execute(
                    _identities.update()
                    .where((_identities.c.id == identity.id) & (_identities.c.version == identity.version))
                    .values(
                        identifier=identity.identifier,
                        password_hash=identity.password_hash,
                        version=_identities.c.version + 1,
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise DuplicateIdentifierError(identity.identifier) from exc
        if result.rowcount == 0:
            return False
        identity.version += 1
        return True

    # ------------------------------------------------------------------
    # Verifications
    # ------------------------------------------------------------------

    def insert_verification(self, verification: Verification) -> None:
        with self._connect() as conn:
            conn.execute(
                _verifications.insert().values(
                    token_hash=verification.token_hash,
                    identifier=verification.identifier,
                    expiry=_iso(verification.expiry),
                    created_at=_iso(verification.created_at),
                )
            )
            conn.commit()

    def latest_verification(self, identifier: str, now: datetime) -> Optional[Verification]:
        with self._connect() as conn:
            row = conn.execute(
                _verifications.select()
                .where((_verifications.c.identifier == identifier) & (_verifications.c.expiry > _iso(now)))
                .order_by(_verifications.c.created_at.desc())
                .limit(1)
            ).fetchone()
        return _row_to_verification(row) if row is not None else None

    def get_verification(self, token_hash: str, identifier: str) -> Optional[Verification]:
        with self._connect() as conn:
            row = conn.execute(
                _verifications.select().where(
                    (_verifications.c.token_hash == token_hash) & (_verifications.c.identifier == identifier)
                )
            ).fetchone()
        return _row_to_verification(row) if row is not None else None

    def delete_verifications(self, identifier: str) -> int:
        with self._connect() as conn:
            result = conn.execute(_verifications.delete().where(_verifications.c.identifier == identifier))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def save_session(self, token: str, data: dict, expiry: datetime) -> None:
        """Upsert a session row. Delete + insert in one transaction stays portable across dialects."""
        with self._connect() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.token == token))
            conn.execute(_sessions.insert().values(token=token, data=json.dumps(data), expiry=_iso(expiry)))
            conn.commit()

    def load_session(self, token: str, now: datetime) -> Optional[dict]:
        with self._connect() as conn:
            row = conn.execute(
                select(_sessions.c.data).where((_sessions.c.token == token) & (_sessions.c.expiry > _iso(now)))
            ).fetchone()
        return json.loads(row.data) if row is not None else None

    def delete_session(self, token: str) -> None:
        with self._connect() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.token == token))
            conn.commit()

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expiry <= _iso(now)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self._connect() as conn:
                conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, StorageError):
            logger.warning("Database ping failed", exc_info=True)
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryAuthStore(AuthStore):
    """Process-local backend for development and tests.

    Every method takes the single lock, so each call is atomic the way a
    single SQL statement is. Stored objects are copied on the way in and on
    the way out; callers can never mutate stored state by reference.
    """

    def __init__(self, timeout: float = _DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout
        self._lock = threading.Lock()
        self._next_id = 1
        self._identities: dict[int, Identity] = {}
        self._ids_by_identifier: dict[str, int] = {}
        self._verifications: dict[str, Verification] = {}
        self._sessions: dict[str, tuple[dict, datetime]] = {}

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            raise StoreTimeoutError(f"store call exceeded {self.timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    # Identities

    def insert_identity(self, identity: Identity) -> Identity:
        with self._locked():
            if identity.identifier in self._ids_by_identifier:
                raise DuplicateIdentifierError(identity.identifier)
            identity.id = self._next_id
            identity.created_at = utcnow()
            identity.version = 1
            self._next_id += 1
            self._identities[identity.id] = copy.copy(identity)
            self._ids_by_identifier[identity.identifier] = identity.id
        return identity

    def get_identity_by_id(self, identity_id: int) -> Optional[Identity]:
        with self._locked():
            stored = self._identities.get(identity_id)
            return copy.copy(stored) if stored is not None else None

    def get_identity_by_identifier(self, identifier: str) -> Optional[Identity]:
        with self._locked():
            identity_id = self._ids_by_identifier.get(identifier)
            if identity_id is None:
                return None
            return copy.copy(self._identities[identity_id])

    def identity_exists(self, identity_id: int) -> bool:
        with self._locked():
            return identity_id in self._identities

    def identifier_exists(self, identifier: str) -> bool:
        with self._locked():
            return identifier in self._ids_by_identifier

    def update_identity(self, identity: Identity) -> bool:
        with self._locked():
            stored = self._identities.get(identity.id)
            if stored is None or stored.version != identity.version:
                return False
            owner = self._ids_by_identifier.get(identity.identifier)
            if owner is not None and owner != identity.id:
                raise DuplicateIdentifierError(identity.identifier)
            del self._ids_by_identifier[stored.identifier]
            identity.version += 1
            self._identities[identity.id] = copy.copy(identity)
            self._ids_by_identifier[identity.identifier] = identity.id
        return True

    # Verifications

    def insert_verification(self, verification: Verification) -> None:
        with self._locked():
            if verification.token_hash in self._verifications:
                raise StorageError("verification token hash already present")
            self._verifications[verification.token_hash] = copy.copy(verification)

    def latest_verification(self, identifier: str, now: datetime) -> Optional[Verification]:
        with self._locked():
            live = [v for v in self._verifications.values() if v.identifier == identifier and v.expiry > now]
            if not live:
                return None
            return copy.copy(max(live, key=lambda v: v.created_at))

    def get_verification(self, token_hash: str, identifier: str) -> Optional[Verification]:
        with self._locked():
            stored = self._verifications.get(token_hash)
            if stored is None or stored.identifier != identifier:
                return None
            return copy.copy(stored)

    def delete_verifications(self, identifier: str) -> int:
        with self._locked():
            doomed = [h for h, v in self._verifications.items() if v.identifier == identifier]
            for token_hash in doomed:
                del self._verifications[token_hash]
            return len(doomed)

    # Sessions

    def save_session(self, token: str, data: dict, expiry: datetime) -> None:
        with self._locked():
            self._sessions[token] = (copy.deepcopy(data), expiry)

    def load_session(self, token: str, now: datetime) -> Optional[dict]:
        with self._locked():
            entry = self._sessions.get(token)
            if entry is None or entry[1] <= now:
                return None
            return copy.deepcopy(entry[0])

    def delete_session(self, token: str) -> None:
        with self._locked():
            self._sessions.pop(token, None)

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._locked():
            doomed = [t for t, (_, expiry) in self._sessions.items() if expiry <= now]
            for token in doomed:
                del self._sessions[token]
            return len(doomed)

    # Lifecycle

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        """Nothing to release; present for interface parity."""


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def open_store(settings: Settings) -> AuthStore:
    """Build the backend named by settings.storage_backend. Called once at startup."""
    if settings.storage_backend == "memory":
        logger.warning("Using in-memory auth store -- all accounts are lost on restart")
        return MemoryAuthStore(timeout=settings.db_timeout_seconds)
    return SQLAuthStore(settings.database_url, timeout=settings.db_timeout_seconds)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        identifier=row.identifier,
        password_hash=row.password_hash,
        created_at=_parse_iso(row.created_at),
        version=row.version,
    )


def _row_to_verification(row) -> Verification:
    return Verification(
        token_hash=row.token_hash,
        identifier=row.identifier,
        expiry=_parse_iso(row.expiry),
        created_at=_parse_iso(row.created_at),
    )
