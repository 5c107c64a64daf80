from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

import threading

from dispatchgate.storage.base import StorageBackend

try:
    import psycopg2
    from psycopg2 import errors as pg_errors
    from psycopg2.extras import RealDictCursor
except Exception:  # pragma: no cover
    psycopg2 = None
    pg_errors = None
    RealDictCursor = None


class PostgresStorageBackend(StorageBackend):
    def __init__(self, dsn: Optional[str]):
        self._dsn = dsn
        if not self._dsn:
            raise ValueError("Postgres DSN missing. Set DISPATCHGATE_POSTGRES_DSN or DATABASE_URL.")
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is required for PostgresStorageBackend (install dispatchgate[postgres])")
        self._local = threading.local()

    @property
    def name(self) -> str:
        return "postgres"

    def _adapt_sql(self, query: str) -> str:
        # Queries are written with sqlite-style '?' placeholders.
        return query.replace("?", "%s")

    def _active_tx(self) -> Optional[Dict[str, Any]]:
        return getattr(self._local, "tx_state", None)

    def _run(self, cur: Any, query: str, params: Sequence[Any]) -> None:
        q = self._adapt_sql(query)
        # psycopg2 treats '%' as interpolation markers whenever a params tuple is
        # passed, even an empty one, so DDL goes through without params.
        if params:
            cur.execute(q, tuple(params))
        else:
            cur.execute(q)

    @contextmanager
    def connect(self) -> Iterator[Any]:
        active = self._active_tx()
        if active is not None:
            yield active["conn"]
            return
        conn = psycopg2.connect(self._dsn)
        try:
            yield conn
        finally:
            conn.close()

    def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        active = self._active_tx()
        if active is not None:
            with active["conn"].cursor() as cur:
                self._run(cur, query, params)
                return cur.rowcount
        with self.connect() as conn:
            with conn.cursor() as cur:
                self._run(cur, query, params)
                conn.commit()
                return cur.rowcount

    def fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                self._run(cur, query, params)
                row = cur.fetchone()
                return dict(row) if row else None

    def fetchall(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                self._run(cur, query, params)
                return [dict(r) for r in cur.fetchall()]

    @contextmanager
    def transaction(self) -> Iterator["PostgresStorageBackend"]:
        active = self._active_tx()
        if active is not None:
            active["depth"] += 1
            try:
                yield self
            finally:
                active["depth"] -= 1
            return

        conn = psycopg2.connect(self._dsn)
        self._local.tx_state = {"conn": conn, "depth": 1}
        try:
            yield self
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._local.tx_state = None
            conn.close()

    def row_lock_clause(self, *, skip_locked: bool = False) -> str:
        return " FOR UPDATE SKIP LOCKED" if skip_locked else " FOR UPDATE"

    def is_unique_violation(self, exc: BaseException) -> bool:
        return pg_errors is not None and isinstance(exc, pg_errors.UniqueViolation)
