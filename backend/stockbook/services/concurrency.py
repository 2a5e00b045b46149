# Overview: Locking and retry helpers shared by every service that owns a unit of work.

from __future__ import annotations

import threading
import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


_registry_guard = threading.Lock()
_mutexes: dict[object, threading.RLock] = {}


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def _mutex_for(key) -> threading.RLock:
    with _registry_guard:
        mutex = _mutexes.get(key)
        if mutex is None:
            mutex = threading.RLock()
            _mutexes[key] = mutex
        return mutex


@contextmanager
def product_locks(*product_ids: int):
    """
    Hold in-process mutexes for a set of products.

    Mutexes are acquired in ascending product id order so two workers locking
    overlapping product sets cannot deadlock, and released in reverse order on
    every exit path. Re-entrant for the same thread.
    """
    ordered = sorted({int(pid) for pid in product_ids if pid is not None})
    acquired: list[threading.RLock] = []
    try:
        for pid in ordered:
            mutex = _mutex_for(pid)
            mutex.acquire()
            acquired.append(mutex)
        yield ordered
    finally:
        for mutex in reversed(acquired):
            mutex.release()


@contextmanager
def named_lock(name: str):
    """In-process mutex for a shared resource that is not a product, such as the petty cash box."""
    mutex = _mutex_for(("named", name))
    with mutex:
        yield


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Any other exception rolls the session back
    and propagates unchanged.
    """
    if attempts is None:
        attempts = current_app.config.get("RETRY_ATTEMPTS", 3)
    attempts = max(1, attempts)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Concurrency conflict (%s), retrying attempt %d/%d",
                type(exc).__name__, attempt + 2, attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc
