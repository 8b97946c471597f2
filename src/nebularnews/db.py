from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator

from .migrations import apply_migrations


def get_db_url() -> str | None:
    url = os.environ.get("NN_DB_URL", "").strip()
    return url or None


def is_postgres_url(url: str | None) -> bool:
    if not url:
        return False
    return url.startswith("postgres://") or url.startswith("postgresql://")


class DBConn:
    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend
        self._in_transaction = False

    def execute(self, sql: str, params: tuple | list | None = None):
        sql = _normalize_sql(sql, self.backend)
        params = params or ()
        cursor = self._conn.cursor()
        cursor.execute(sql, params)
        return cursor

    def executemany(self, sql: str, seq_of_params):
        sql = _normalize_sql(sql, self.backend)
        cursor = self._conn.cursor()
        cursor.executemany(sql, seq_of_params)
        return cursor

    def commit(self) -> None:
        if self._in_transaction:
            return
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
        """Run a block atomically; nested blocks join the outer one."""
        if self._in_transaction:
            yield self
            return
        self._conn.commit()
        self.execute("BEGIN IMMEDIATE")
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._in_transaction = False
            self._conn.rollback()
            raise
        self._in_transaction = False
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str):
        return getattr(self._conn, name)


def connect_db(path: str) -> DBConn:
    url = get_db_url()
    if url and is_postgres_url(url):
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("psycopg is required for PostgreSQL support") from exc
        conn = DBConn(psycopg.connect(url), "postgres")
        apply_migrations(conn)
        return conn

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    raw = sqlite3.connect(path, timeout=5.0, check_same_thread=False)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    raw.execute("PRAGMA foreign_keys=ON")
    conn = DBConn(raw, "sqlite")
    apply_migrations(conn)
    return conn


def _normalize_sql(sql: str, backend: str) -> str:
    if backend != "postgres":
        return sql
    normalized = _replace_insert_or_ignore(sql)
    normalized = normalized.replace("BEGIN IMMEDIATE", "BEGIN")
    normalized = _convert_qmark_to_percent(normalized)
    return normalized


def _replace_insert_or_ignore(sql: str) -> str:
    upper = sql.upper()
    if "INSERT OR IGNORE" not in upper:
        return sql
    replaced = _replace_first_case_insensitive(sql, "INSERT OR IGNORE", "INSERT")
    if "ON CONFLICT" in replaced.upper():
        return replaced
    stripped = replaced.rstrip().rstrip(";")
    return stripped + " ON CONFLICT DO NOTHING"


def _replace_first_case_insensitive(text: str, needle: str, replacement: str) -> str:
    idx = text.upper().find(needle.upper())
    if idx == -1:
        return text
    return text[:idx] + replacement + text[idx + len(needle) :]


def _convert_qmark_to_percent(sql: str) -> str:
    out = []
    in_single = False
    in_double = False
    escape = False
    for ch in sql:
        if ch == "\\" and not escape:
            escape = True
            out.append(ch)
            continue
        if ch == "'" and not in_double and not escape:
            in_single = not in_single
        elif ch == '"' and not in_single and not escape:
            in_double = not in_double
        if ch == "?" and not in_single and not in_double:
            out.append("%s")
        else:
            out.append(ch)
        escape = False
    return "".join(out)
