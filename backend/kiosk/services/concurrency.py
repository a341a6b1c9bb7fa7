# Overview: Locking and retry helpers shared by every ledger writer.

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Iterable, Iterator

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..validation import StorageUnavailableError


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Take the database write lock up front on SQLite.

    Without BEGIN IMMEDIATE two SQLite connections can both read a snapshot
    and only discover the conflict at commit time.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.dbapi_connection
    # A pending write already holds the reserved lock
    if getattr(raw, "in_transaction", False):
        return
    db.session.execute(text("BEGIN IMMEDIATE"))


class KeyedLock:
    """
    Registry of one mutex per key (product id).

    Writers for different keys never block each other. Multi-key callers
    must go through acquire_many, which takes locks in sorted order.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def _lock_for(self, key: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def acquire(self, key: int) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield

    @contextmanager
    def acquire_many(self, keys: Iterable[int]) -> Iterator[None]:
        ordered = sorted(set(keys))
        held: list[threading.Lock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Process-wide; the kiosk runs as a single process
product_locks = KeyedLock()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05):
    """
    Execute a DB operation with retry on optimistic locking conflicts.

    StaleDataError is retried with backoff. OperationalError means the
    database is locked or gone: roll back and surface StorageUnavailableError
    so callers never see a partial write.
    """
    for attempt in range(attempts):
        try:
            return func()
        except StaleDataError:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise StorageUnavailableError("Concurrent update conflict; please retry")
            time.sleep(backoff_base * (2 ** attempt))
        except OperationalError as exc:
            db.session.rollback()
            current_app.logger.warning("Storage operation failed: %s", exc)
            raise StorageUnavailableError("Storage unavailable; please retry") from exc
    raise StorageUnavailableError("Concurrent update conflict; please retry")
