"""
Storage Backend Module

Provides the abstract storage interface and three implementations: in-memory
(testing), SQLite (single-file persistence) and PostgreSQL (production).

Each backend exposes the record operations the user manager needs and a
transaction object whose lock_balance() holds an exclusive lock on a user row
until the transaction commits or rolls back.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
import sqlite3
import threading

import psycopg2
import psycopg2.errors
from sqlalchemy import exc as sa_exc
from sqlalchemy.pool import QueuePool

from .config import LedgerConfig
from .errors import LedgerError, NotFoundError, StoreConnectionError, TransactionError
from .logging_config import get_logger
from .models import User
from .money import ZERO, from_cents, to_cents


logger = get_logger("user_ledger.storage")

# SQLite INTEGER is a signed 64-bit value
SQLITE_MAX_INT = 2 ** 63 - 1


def create_pool(
    connect: Callable[[], Any],
    max_open: int = 10,
    max_idle: int = 5,
    max_lifetime: float = 300.0,
    acquire_timeout: Optional[float] = None
) -> QueuePool:
    """
    Build a bounded connection pool around a DB-API connect function.

    At most max_open connections exist at once. Up to max_idle of them stay
    open for reuse; the overflow is closed when it is returned. A connection
    older than max_lifetime seconds is reopened at checkout. With
    acquire_timeout None a checkout waits for a free connection forever.
    """
    if max_open < 1:
        raise ValueError("max_open must be at least 1")
    pool_size = max(1, min(max_idle, max_open))
    return QueuePool(
        connect,
        pool_size=pool_size,
        max_overflow=max_open - pool_size,
        timeout=acquire_timeout,
        recycle=max_lifetime,
    )


def checkout(pool: QueuePool):
    """Take a connection from the pool"""
    try:
        return pool.connect()
    except sa_exc.TimeoutError as e:
        raise StoreConnectionError(f"timed out waiting for a database connection: {e}") from e


def checkin(conn, discard: bool = False) -> None:
    """Return a pooled connection; discard closes it instead of keeping it idle"""
    if discard:
        conn.invalidate()
    else:
        conn.close()


@contextmanager
def pooled_connection(pool: QueuePool):
    """
    Check a connection out for the duration of the block.

    Statement-level ledger errors leave the connection usable and it goes
    back to the pool. Connection failures and unexpected errors discard it.
    """
    conn = checkout(pool)
    discard = False
    try:
        yield conn
    except Exception as e:
        discard = isinstance(e, StoreConnectionError) or not isinstance(e, LedgerError)
        raise
    finally:
        checkin(conn, discard=discard)


class StorageTransaction(ABC):
    """A unit of work on one connection. rollback() after commit() is a no-op."""

    def __init__(self, lock_timeout: Optional[float] = None):
        self.lock_timeout = lock_timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once the transaction has committed or rolled back"""
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise TransactionError("transaction is already closed")

    @abstractmethod
    def lock_balance(self, user_id: int) -> Optional[Decimal]:
        """Read a user's balance and hold an exclusive row lock. None if absent."""
        pass

    @abstractmethod
    def debit(self, user_id: int, amount: Decimal) -> None:
        """Subtract amount from a user's balance"""
        pass

    @abstractmethod
    def credit(self, user_id: int, amount: Decimal) -> None:
        """Add amount to a user's balance"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit and release all locks"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard all changes and release all locks"""
        pass


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create the users table if it does not exist"""
        pass

    @abstractmethod
    def insert_user(self, name: str, email: str, balance: Decimal) -> User:
        """Insert a user and return it with its assigned id"""
        pass

    @abstractmethod
    def get_user(self, user_id: int) -> Optional[User]:
        """Load a user by id"""
        pass

    @abstractmethod
    def list_users(self) -> List[User]:
        """Load all users ordered by id"""
        pass

    @abstractmethod
    def begin(self, lock_timeout: Optional[float] = None) -> StorageTransaction:
        """Start a transaction. lock_timeout bounds each row lock wait (None = forever)."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connections"""
        pass

    @contextmanager
    def transaction(self, lock_timeout: Optional[float] = None):
        """Context manager for atomic operations"""
        tx = self.begin(lock_timeout=lock_timeout)
        try:
            yield tx
            tx.commit()
        except Exception:
            try:
                tx.rollback()
            except TransactionError as e:
                logger.error(f"Rollback failed while handling an error: {e}")
            raise


def _rollback_after_failed_commit(tx: StorageTransaction) -> None:
    """Roll back after a commit error; the commit error stays the one raised"""
    try:
        tx.rollback()
    except TransactionError as e:
        logger.error(f"Rollback after failed commit also failed: {e}")


def _fits_sqlite_int(value: int) -> bool:
    return -SQLITE_MAX_INT - 1 <= value <= SQLITE_MAX_INT


class _InMemoryTransaction(StorageTransaction):
    """Buffers balance changes and holds per-row locks until it ends"""

    def __init__(self, storage: 'InMemoryStorage', lock_timeout: Optional[float]):
        super().__init__(lock_timeout)
        self._storage = storage
        self._held: Dict[int, threading.Lock] = {}
        self._deltas: Dict[int, Decimal] = {}

    def lock_balance(self, user_id: int) -> Optional[Decimal]:
        self._ensure_open()
        lock = self._storage._row_lock(user_id)
        if lock is None:
            return None

        if user_id not in self._held:
            timeout = -1 if self.lock_timeout is None else self.lock_timeout
            if not lock.acquire(timeout=timeout):
                raise TransactionError(f"timed out waiting for row lock on user {user_id}")
            self._held[user_id] = lock

        return self._storage._committed_balance(user_id) + self._deltas.get(user_id, ZERO)

    def _adjust(self, user_id: int, delta: Decimal) -> None:
        current = self.lock_balance(user_id)
        if current is None:
            raise NotFoundError(user_id)
        if current + delta < ZERO:
            raise TransactionError(f"balance of user {user_id} would become negative")
        self._deltas[user_id] = self._deltas.get(user_id, ZERO) + delta

    def debit(self, user_id: int, amount: Decimal) -> None:
        self._adjust(user_id, -amount)

    def credit(self, user_id: int, amount: Decimal) -> None:
        self._adjust(user_id, amount)

    def commit(self) -> None:
        self._ensure_open()
        self._storage._apply(self._deltas)
        self._finish()

    def rollback(self) -> None:
        if self._closed:
            return
        self._deltas.clear()
        self._finish()

    def _finish(self) -> None:
        self._closed = True
        for lock in self._held.values():
            lock.release()
        self._held.clear()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._rows: Dict[int, Dict[str, Any]] = {}
        self._row_locks: Dict[int, threading.Lock] = {}
        self._next_id = 1
        self._lock = threading.RLock()

    def ensure_schema(self) -> None:
        """Nothing to create for in-memory storage"""
        pass

    def insert_user(self, name: str, email: str, balance: Decimal) -> User:
        with self._lock:
            user_id = self._next_id
            self._next_id += 1
            self._rows[user_id] = {"name": name, "email": email, "balance": balance}
            self._row_locks[user_id] = threading.Lock()
            return self._to_user(user_id)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._lock:
            if user_id not in self._rows:
                return None
            return self._to_user(user_id)

    def list_users(self) -> List[User]:
        with self._lock:
            return [self._to_user(user_id) for user_id in sorted(self._rows)]

    def begin(self, lock_timeout: Optional[float] = None) -> StorageTransaction:
        return _InMemoryTransaction(self, lock_timeout)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def _to_user(self, user_id: int) -> User:
        row = self._rows[user_id]
        return User(id=user_id, name=row["name"], email=row["email"], balance=row["balance"])

    def _row_lock(self, user_id: int) -> Optional[threading.Lock]:
        with self._lock:
            return self._row_locks.get(user_id)

    def _committed_balance(self, user_id: int) -> Decimal:
        with self._lock:
            return self._rows[user_id]["balance"]

    def _apply(self, deltas: Dict[int, Decimal]) -> None:
        with self._lock:
            for user_id, delta in deltas.items():
                self._rows[user_id]["balance"] += delta


class _SQLiteTransaction(StorageTransaction):
    """SQLite transaction opened with BEGIN IMMEDIATE (database write lock)"""

    def __init__(self, storage: 'SQLiteStorage', conn,
                 lock_timeout: Optional[float]):
        super().__init__(lock_timeout)
        self._storage = storage
        self._conn = conn

    def lock_balance(self, user_id: int) -> Optional[Decimal]:
        self._ensure_open()
        if not _fits_sqlite_int(user_id):
            return None
        try:
            row = self._conn.execute(
                "SELECT balance_cents FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise TransactionError(f"select user {user_id}: {e}") from e
        if row is None:
            return None
        return from_cents(row["balance_cents"])

    def _adjust(self, user_id: int, cents: int, label: str) -> None:
        self._ensure_open()
        if not _fits_sqlite_int(user_id):
            raise NotFoundError(user_id)
        try:
            cursor = self._conn.execute(
                "UPDATE users SET balance_cents = balance_cents + ? WHERE id = ?",
                (cents, user_id)
            )
        except sqlite3.Error as e:
            raise TransactionError(f"{label} user {user_id}: {e}") from e
        if cursor.rowcount == 0:
            raise NotFoundError(user_id)

    def debit(self, user_id: int, amount: Decimal) -> None:
        self._adjust(user_id, -to_cents(amount), "debit")

    def credit(self, user_id: int, amount: Decimal) -> None:
        self._adjust(user_id, to_cents(amount), "credit")

    def commit(self) -> None:
        self._ensure_open()
        try:
            self._conn.execute("COMMIT")
        except sqlite3.Error as e:
            _rollback_after_failed_commit(self)
            raise TransactionError(f"commit: {e}") from e
        self._finish(discard=False)

    def rollback(self) -> None:
        if self._closed:
            return
        try:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            self._finish(discard=True)
            raise TransactionError(f"rollback: {e}") from e
        self._finish(discard=False)

    def _finish(self, discard: bool) -> None:
        self._closed = True
        self._storage._release(self._conn, discard=discard)


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence. Balances are stored as integer cents."""

    def __init__(self, db_path: Union[str, Path], max_open: int = 10, max_idle: int = 5,
                 max_lifetime: float = 300.0, acquire_timeout: Optional[float] = None,
                 busy_timeout: float = 30.0):
        self.db_path = str(db_path)
        if self.db_path == ":memory:":
            raise ValueError("SQLite :memory: databases are per-connection; use memory:// instead")
        self.busy_timeout = busy_timeout
        self._pool = create_pool(
            self._connect, max_open=max_open, max_idle=max_idle,
            max_lifetime=max_lifetime, acquire_timeout=acquire_timeout
        )

        # Ping, and enable WAL mode for better concurrent access
        try:
            with pooled_connection(self._pool) as conn:
                conn.execute("PRAGMA journal_mode = WAL")
        except sqlite3.Error as e:
            self._pool.dispose()
            raise StoreConnectionError(f"cannot open database {self.db_path}: {e}") from e
        except StoreConnectionError:
            self._pool.dispose()
            raise

    def _connect(self) -> sqlite3.Connection:
        try:
            # isolation_level=None: transactions are started explicitly with BEGIN
            conn = sqlite3.connect(self.db_path, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA synchronous = NORMAL")
            self._set_busy_timeout(conn, self.busy_timeout)
        except sqlite3.Error as e:
            raise StoreConnectionError(f"cannot open database {self.db_path}: {e}") from e
        return conn

    @staticmethod
    def _set_busy_timeout(conn, seconds: Optional[float]) -> None:
        millis = 2 ** 31 - 1 if seconds is None else int(seconds * 1000)
        conn.execute(f"PRAGMA busy_timeout = {millis}")

    def _release(self, conn, discard: bool = False) -> None:
        if not discard:
            try:
                self._set_busy_timeout(conn, self.busy_timeout)
            except sqlite3.Error:
                discard = True
        checkin(conn, discard=discard)

    def ensure_schema(self) -> None:
        self._query("create schema", """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL,
                balance_cents INTEGER NOT NULL DEFAULT 0 CHECK (balance_cents >= 0)
            )
        """)

    def insert_user(self, name: str, email: str, balance: Decimal) -> User:
        with pooled_connection(self._pool) as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO users (name, email, balance_cents) VALUES (?, ?, ?)",
                    (name, email, to_cents(balance))
                )
            except (sqlite3.Error, OverflowError) as e:
                raise TransactionError(f"insert user: {e}") from e
            return User(id=cursor.lastrowid, name=name, email=email, balance=balance)

    def _query(self, label: str, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with pooled_connection(self._pool) as conn:
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise TransactionError(f"{label}: {e}") from e

    def get_user(self, user_id: int) -> Optional[User]:
        if not _fits_sqlite_int(user_id):
            return None
        rows = self._query(
            "select user",
            "SELECT id, name, email, balance_cents FROM users WHERE id = ?", (user_id,)
        )
        return self._to_user(rows[0]) if rows else None

    def list_users(self) -> List[User]:
        rows = self._query(
            "list users", "SELECT id, name, email, balance_cents FROM users ORDER BY id"
        )
        return [self._to_user(row) for row in rows]

    def begin(self, lock_timeout: Optional[float] = None) -> StorageTransaction:
        conn = checkout(self._pool)
        try:
            self._set_busy_timeout(conn, lock_timeout)
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                self._release(conn)
                raise TransactionError(f"timed out waiting for database lock: {e}") from e
            checkin(conn, discard=True)
            raise TransactionError(f"begin: {e}") from e
        except sqlite3.Error as e:
            checkin(conn, discard=True)
            raise TransactionError(f"begin: {e}") from e
        return _SQLiteTransaction(self, conn, lock_timeout)

    def close(self) -> None:
        self._pool.dispose()

    @staticmethod
    def _to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"], name=row["name"], email=row["email"],
            balance=from_cents(row["balance_cents"])
        )


class _PostgreSQLTransaction(StorageTransaction):
    """PostgreSQL transaction using SELECT ... FOR UPDATE row locks"""

    def __init__(self, storage: 'PostgreSQLStorage', conn, lock_timeout: Optional[float]):
        super().__init__(lock_timeout)
        self._storage = storage
        self._conn = conn

    def _execute(self, label: str, user_id: int, sql: str, params: tuple):
        self._ensure_open()
        cursor = self._conn.cursor()
        try:
            cursor.execute(sql, params)
            return cursor
        except psycopg2.errors.LockNotAvailable as e:
            cursor.close()
            raise TransactionError(f"timed out waiting for row lock on user {user_id}") from e
        except psycopg2.errors.DeadlockDetected as e:
            cursor.close()
            raise TransactionError(f"deadlock detected on user {user_id}") from e
        except psycopg2.Error as e:
            cursor.close()
            raise TransactionError(f"{label} user {user_id}: {e}") from e

    def lock_balance(self, user_id: int) -> Optional[Decimal]:
        cursor = self._execute(
            "select", user_id,
            "SELECT balance FROM users WHERE id = %s FOR UPDATE", (user_id,)
        )
        try:
            row = cursor.fetchone()
        finally:
            cursor.close()
        return row[0] if row else None

    def _adjust(self, label: str, user_id: int, sql: str, amount: Decimal) -> None:
        cursor = self._execute(label, user_id, sql, (amount, user_id))
        try:
            if cursor.rowcount == 0:
                raise NotFoundError(user_id)
        finally:
            cursor.close()

    def debit(self, user_id: int, amount: Decimal) -> None:
        self._adjust("debit", user_id, "UPDATE users SET balance = balance - %s WHERE id = %s", amount)

    def credit(self, user_id: int, amount: Decimal) -> None:
        self._adjust("credit", user_id, "UPDATE users SET balance = balance + %s WHERE id = %s", amount)

    def commit(self) -> None:
        self._ensure_open()
        try:
            self._conn.commit()
        except psycopg2.Error as e:
            _rollback_after_failed_commit(self)
            raise TransactionError(f"commit: {e}") from e
        self._finish(discard=False)

    def rollback(self) -> None:
        if self._closed:
            return
        try:
            self._conn.rollback()
        except psycopg2.Error as e:
            self._finish(discard=True)
            raise TransactionError(f"rollback: {e}") from e
        self._finish(discard=False)

    def _finish(self, discard: bool) -> None:
        self._closed = True
        checkin(self._conn, discard=discard)


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str, max_open: int = 10, max_idle: int = 5,
                 max_lifetime: float = 300.0, acquire_timeout: Optional[float] = None):
        self.connection_string = connection_string
        self._pool = create_pool(
            self._connect, max_open=max_open, max_idle=max_idle,
            max_lifetime=max_lifetime, acquire_timeout=acquire_timeout
        )

        # Ping so a bad URL or credentials fail at startup
        try:
            with pooled_connection(self._pool) as conn:
                self._run(conn, "ping", "SELECT 1")
        except LedgerError:
            self._pool.dispose()
            raise

    def _connect(self):
        try:
            conn = psycopg2.connect(self.connection_string)
        except psycopg2.Error as e:
            raise StoreConnectionError(f"cannot connect to database: {e}") from e
        conn.autocommit = False  # We handle transactions manually
        return conn

    @staticmethod
    def _run(conn, label: str, sql: str, params: tuple = ()) -> List[tuple]:
        """Execute one statement in its own transaction and return any rows"""
        try:
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
                rows = cursor.fetchall() if cursor.description else []
            conn.commit()
            return rows
        except psycopg2.OperationalError as e:
            raise StoreConnectionError(f"{label}: {e}") from e
        except psycopg2.Error as e:
            conn.rollback()
            raise TransactionError(f"{label}: {e}") from e

    def ensure_schema(self) -> None:
        with pooled_connection(self._pool) as conn:
            self._run(conn, "create schema", """
                CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    balance NUMERIC(15, 2) NOT NULL DEFAULT 0 CHECK (balance >= 0)
                )
            """)

    def insert_user(self, name: str, email: str, balance: Decimal) -> User:
        with pooled_connection(self._pool) as conn:
            rows = self._run(
                conn, "insert user",
                "INSERT INTO users (name, email, balance) VALUES (%s, %s, %s) "
                "RETURNING id, name, email, balance",
                (name, email, balance)
            )
        return self._to_user(rows[0])

    def get_user(self, user_id: int) -> Optional[User]:
        with pooled_connection(self._pool) as conn:
            rows = self._run(
                conn, "select user",
                "SELECT id, name, email, balance FROM users WHERE id = %s", (user_id,)
            )
        return self._to_user(rows[0]) if rows else None

    def list_users(self) -> List[User]:
        with pooled_connection(self._pool) as conn:
            rows = self._run(
                conn, "list users",
                "SELECT id, name, email, balance FROM users ORDER BY id"
            )
        return [self._to_user(row) for row in rows]

    def begin(self, lock_timeout: Optional[float] = None) -> StorageTransaction:
        conn = checkout(self._pool)
        if lock_timeout is not None:
            try:
                with conn.cursor() as cursor:
                    # Scoped to this transaction only
                    cursor.execute(
                        "SELECT set_config('lock_timeout', %s, true)",
                        (f"{max(1, int(lock_timeout * 1000))}ms",)
                    )
            except psycopg2.Error as e:
                checkin(conn, discard=True)
                raise TransactionError(f"begin: {e}") from e
        return _PostgreSQLTransaction(self, conn, lock_timeout)

    def close(self) -> None:
        self._pool.dispose()

    @staticmethod
    def _to_user(row: tuple) -> User:
        user_id, name, email, balance = row
        return User(id=user_id, name=name, email=email, balance=Decimal(balance))


def create_storage(config: LedgerConfig) -> StorageInterface:
    """
    Build the storage backend selected by config.database_url.

    postgresql:// or postgres:// selects PostgreSQL, sqlite:///path selects
    SQLite, and memory:// selects in-memory storage.

    Raises:
        ValueError: If the URL scheme is not supported
        StoreConnectionError: If the database cannot be reached
    """
    url = config.database_url
    pool_options = dict(
        max_open=config.pool_max_open,
        max_idle=config.pool_max_idle,
        max_lifetime=config.pool_max_lifetime_seconds,
        acquire_timeout=config.pool_acquire_timeout_seconds,
    )

    if url.startswith(("postgresql://", "postgres://")):
        storage: StorageInterface = PostgreSQLStorage(url, **pool_options)
        backend = "postgresql"
    elif url.startswith("sqlite:///"):
        storage = SQLiteStorage(url[len("sqlite:///"):], **pool_options)
        backend = "sqlite"
    elif url.startswith("memory://"):
        storage = InMemoryStorage()
        backend = "memory"
    else:
        raise ValueError(f"Unsupported database URL: {url}")

    if config.auto_create_schema:
        try:
            storage.ensure_schema()
        except Exception:
            storage.close()
            raise

    logger.info(f"Storage backend ready: {backend}")
    return storage
