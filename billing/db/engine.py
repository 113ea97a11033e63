# billing/db/engine.py

import threading
from contextlib import contextmanager
from contextvars import ContextVar
from functools import lru_cache
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from billing.config import settings
from billing.errors import ConcurrencyError

_LOCK_MARKERS = ("database is locked", "deadlock", "could not serialize", "lock timeout")

# execution option marking a connection opened by unit_of_work
WRITE_OPTION = "billing_write"


def create_billing_engine(url: str, echo: bool = False) -> Engine:
    """
    Build an engine for the billing store.

    On SQLite, ``unit_of_work`` transactions open with BEGIN IMMEDIATE so two
    writers touching the same invoice serialize on the database lock instead
    of failing at commit time. Read-only connections use a deferred BEGIN and
    never take the write lock.
    """
    is_sqlite = url.startswith("sqlite")
    connect_args = {"check_same_thread": False, "timeout": 15} if is_sqlite else {}
    engine = create_engine(url, echo=echo, future=True, connect_args=connect_args)

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            # hand transaction control to the "begin" hook below
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            if conn.get_execution_options().get(WRITE_OPTION):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

    return engine


@lru_cache(maxsize=None)
def _engine_for(url: str) -> Engine:
    return create_billing_engine(url)


def get_engine(url: Optional[str] = None) -> Engine:
    return _engine_for(url or settings.database_url)


def is_lock_conflict(exc: OperationalError) -> bool:
    text = str(exc.orig).lower()
    return any(marker in text for marker in _LOCK_MARKERS)


class CommitGate:
    """
    Shared between a batch runner and the thread processing one record.

    After the runner gives up on the record, the record's next commit is
    refused and its transaction rolls back. After the record has started
    committing, the runner can no longer give up and waits for the outcome.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.abandoned = False
        self.committing = False

    def claim(self) -> None:
        with self._lock:
            if self.abandoned:
                raise TimeoutError("Record was abandoned after its timeout; changes rolled back")
            self.committing = True

    def abandon(self) -> bool:
        """Give up on the record. False means it is already committing."""
        with self._lock:
            if self.committing:
                return False
            self.abandoned = True
            return True

    def run(self, fn, *args):
        token = _current_gate.set(self)
        try:
            return fn(*args)
        finally:
            _current_gate.reset(token)


_current_gate: ContextVar[Optional[CommitGate]] = ContextVar("billing_commit_gate", default=None)


@contextmanager
def unit_of_work(engine: Engine) -> Iterator[Connection]:
    """
    One atomic transaction for every write that keeps invoice and payment
    rows consistent. Commits on clean exit, rolls back on any exception.
    """
    try:
        with engine.connect() as conn:
            conn.execution_options(**{WRITE_OPTION: True})
            with conn.begin():
                yield conn
                gate = _current_gate.get()
                if gate is not None:
                    gate.claim()
    except OperationalError as exc:
        if is_lock_conflict(exc):
            raise ConcurrencyError(
                "The invoice is being modified by another operation; retry the request"
            ) from exc
        raise
