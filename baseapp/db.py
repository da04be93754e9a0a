import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

BACKENDS = ("sqlite", "memdb")

Op = Tuple[bytes, Optional[bytes]]


def _check_bytes(name: str, value: object) -> None:
    if not isinstance(value, (bytes, bytearray)):
        raise TypeError(f"{name} must be bytes, got {type(value).__name__}")


def prefix_end(prefix: bytes) -> Optional[bytes]:
    end = bytearray(prefix)
    while end:
        if end[-1] != 0xFF:
            end[-1] += 1
            return bytes(end)
        end.pop()
    return None


class Batch:
    """Ordered set of writes applied to a store in one atomic flush."""

    def __init__(self, store: "KVStore") -> None:
        self._store = store
        self._ops: List[Op] = []
        self._closed = False

    def set(self, key: bytes, value: bytes) -> None:
        self._check_open()
        _check_bytes("key", key)
        _check_bytes("value", value)
        if not key:
            raise ValueError("key must not be empty")
        self._ops.append((bytes(key), bytes(value)))

    def delete(self, key: bytes) -> None:
        self._check_open()
        _check_bytes("key", key)
        self._ops.append((bytes(key), None))

    def write_sync(self) -> None:
        self._check_open()
        self._store._write(self._ops)
        self.close()

    def close(self) -> None:
        self._ops = []
        self._closed = True

    def __len__(self) -> int:
        return len(self._ops)

    def __enter__(self) -> "Batch":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("batch already written or closed")


class KVStore:
    def get(self, key: bytes) -> Optional[bytes]:
        raise NotImplementedError

    def has(self, key: bytes) -> bool:
        return self.get(key) is not None

    def iterate(self, start: Optional[bytes] = None, end: Optional[bytes] = None) -> Iterator[Tuple[bytes, bytes]]:
        raise NotImplementedError

    def iterate_prefix(self, prefix: bytes) -> Iterator[Tuple[bytes, bytes]]:
        return self.iterate(prefix or None, prefix_end(prefix))

    def new_batch(self) -> Batch:
        return Batch(self)

    @contextmanager
    def snapshot(self) -> Iterator["KVStore"]:
        """Reads made by this thread inside the block see one committed state."""
        yield self

    def close(self) -> None:
        raise NotImplementedError

    def _write(self, ops: List[Op]) -> None:
        raise NotImplementedError


class SqliteStore(KVStore):
    def __init__(self, path: str):
        dir_name = os.path.dirname(path)
        if dir_name:
            os.makedirs(dir_name, exist_ok=True)
        self.path = path
        self.conn = self._connect()
        self._local = threading.local()
        self._readers: List[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._closed = False
        self._init_tables()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=FULL")
        return conn

    def _init_tables(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            "CREATE TABLE IF NOT EXISTS kv (key BLOB PRIMARY KEY, value BLOB NOT NULL) WITHOUT ROWID"
        )

    def _reader(self) -> sqlite3.Connection:
        if self._closed:
            raise RuntimeError("store is closed")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._readers_lock:
                self._readers.append(conn)
        return conn

    def get(self, key: bytes) -> Optional[bytes]:
        _check_bytes("key", key)
        cur = self._reader().cursor()
        cur.execute("SELECT value FROM kv WHERE key = ?", (bytes(key),))
        row = cur.fetchone()
        return bytes(row[0]) if row else None

    @contextmanager
    def snapshot(self) -> Iterator["KVStore"]:
        conn = self._reader()
        if conn.in_transaction:
            yield self
            return
        # WAL readers keep the snapshot taken at their first read until COMMIT
        conn.execute("BEGIN")
        try:
            yield self
        finally:
            conn.execute("COMMIT")

    def iterate(self, start: Optional[bytes] = None, end: Optional[bytes] = None) -> Iterator[Tuple[bytes, bytes]]:
        clauses = []
        params: List[bytes] = []
        if start is not None:
            clauses.append("key >= ?")
            params.append(bytes(start))
        if end is not None:
            clauses.append("key < ?")
            params.append(bytes(end))
        sql = "SELECT key, value FROM kv"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY key"
        cur = self._reader().cursor()
        cur.execute(sql, params)
        rows = cur.fetchall()
        for key, value in rows:
            yield (bytes(key), bytes(value))

    def _write(self, ops: List[Op]) -> None:
        if self._closed:
            raise RuntimeError("store is closed")
        with self._write_lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                for key, value in ops:
                    if value is None:
                        cur.execute("DELETE FROM kv WHERE key = ?", (key,))
                    else:
                        cur.execute(
                            "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                            (key, value),
                        )
                cur.execute("COMMIT")
            except BaseException:
                cur.execute("ROLLBACK")
                raise
        logger.debug("flushed %d ops to %s", len(ops), self.path)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with self._readers_lock:
            for conn in self._readers:
                conn.close()
            self._readers = []
        self.conn.close()


class MemStore(KVStore):
    """Non-persistent store for tests and throwaway nodes."""

    def __init__(self) -> None:
        self._data: Dict[bytes, bytes] = {}
        self._lock = threading.RLock()
        self._closed = False

    def get(self, key: bytes) -> Optional[bytes]:
        _check_bytes("key", key)
        with self._lock:
            return self._data.get(bytes(key))

    def iterate(self, start: Optional[bytes] = None, end: Optional[bytes] = None) -> Iterator[Tuple[bytes, bytes]]:
        with self._lock:
            items = sorted(self._data.items())
        for key, value in items:
            if start is not None and key < start:
                continue
            if end is not None and key >= end:
                break
            yield (key, value)

    @contextmanager
    def snapshot(self) -> Iterator["KVStore"]:
        with self._lock:
            yield self

    def _write(self, ops: List[Op]) -> None:
        if self._closed:
            raise RuntimeError("store is closed")
        with self._lock:
            for key, value in ops:
                if value is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = value

    def close(self) -> None:
        self._closed = True


def open_store(backend: str, data_dir: str, name: str = "app") -> KVStore:
    backend = backend.lower()
    if backend == "sqlite":
        return SqliteStore(os.path.join(data_dir, f"{name}.db"))
    if backend == "memdb":
        return MemStore()
    raise ValueError(f"unknown db backend {backend!r}, expected one of {', '.join(BACKENDS)}")
