"""Shared SQLite access for the ledger and the state store.

Both live in one database file so that a state transition and its audit
record commit in the same transaction.  Connections run in autocommit mode
and transactions are opened explicitly with ``BEGIN IMMEDIATE``, which
takes the write lock up front and serializes concurrent writers.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path


class Database:
    """Connection factory over one SQLite file (WAL journal).

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.path = Path(db_path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def init_schema(self, *statements: str) -> None:
        conn = self.connect()
        try:
            for statement in statements:
                conn.execute(statement)
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self, conn: sqlite3.Connection | None = None
    ) -> Iterator[sqlite3.Connection]:
        """Open a write transaction, or join the caller's one.

        When *conn* is given the caller owns the transaction; statements
        run on it and nothing is committed here.
        """
        if conn is not None:
            yield conn
            return
        own = self.connect()
        try:
            own.execute("BEGIN IMMEDIATE")
            try:
                yield own
            except BaseException:
                own.execute("ROLLBACK")
                raise
            own.execute("COMMIT")
        finally:
            own.close()

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()
