from __future__ import annotations

from array import array
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
import sqlite3
import threading

from kbase.errors import StoreUnavailableError, StoreWriteError


def encode_embedding(values: list[float] | tuple[float, ...]) -> bytes:
    vector = array("f", values)
    return vector.tobytes()


def decode_embedding(blob: bytes) -> list[float]:
    vector = array("f")
    vector.frombytes(blob)
    return vector.tolist()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def translate_sqlite_error(exc: sqlite3.Error, *, operation: str) -> StoreWriteError:
    message = f"{operation} failed: {exc}"
    if isinstance(exc, (sqlite3.IntegrityError, sqlite3.DataError, sqlite3.InterfaceError)):
        return StoreWriteError(message)
    return StoreUnavailableError(message)


class SQLiteStore:
    """One long-lived SQLite connection guarded by a lock.

    Every statement goes through :meth:`connection`, which runs a single
    transaction and maps sqlite errors onto the store error hierarchy.
    """

    name = "store"
    schema = ""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(db_path, check_same_thread=False)
            self._connection.execute("PRAGMA foreign_keys = ON")
            self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.executescript(self.schema)
        except (OSError, sqlite3.Error) as exc:
            raise StoreUnavailableError(f"cannot open {self.name} at {db_path}: {exc}") from exc

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._connection:
                    yield self._connection
            except sqlite3.Error as exc:
                raise translate_sqlite_error(exc, operation=f"{self.name} {operation}") from exc

    def close(self) -> None:
        with self._lock:
            self._connection.close()
