"""Backend-neutral SQL helpers shared by the sqlite/Postgres stores."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
import sqlite3
from typing import Any, Iterator

import psycopg
from psycopg import errors as pg_errors


def is_postgres_dsn(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith("postgres://") or value.startswith("postgresql://")


def backend_for(locator: str) -> str:
    return "postgres" if is_postgres_dsn(locator) else "sqlite"


def sqlite_path(locator: str) -> str:
    value = str(locator or "").strip()
    if value.startswith("sqlite:///"):
        return value[len("sqlite:///") :]
    if value.startswith("sqlite://"):
        return value[len("sqlite://") :]
    return value


def connect(locator: str, backend: str) -> Any:
    if backend == "sqlite":
        path = Path(sqlite_path(locator))
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn
    return psycopg.connect(locator)


def render_sql(sql: str, backend: str) -> str:
    marker = "%s" if backend == "postgres" else "?"
    rendered = sql
    for idx in range(1, 41):
        rendered = rendered.replace(f"{{p{idx}}}", marker)
    return rendered


def placeholders(start: int, count: int) -> list[str]:
    return [f"{{p{idx}}}" for idx in range(start, start + count)]


def query_one(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> Any:
    rendered = render_sql(sql, backend)
    cur = conn.execute(rendered, params) if backend == "sqlite" else conn.cursor().execute(rendered, params)
    return cur.fetchone()


def query_all(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> list[Any]:
    rendered = render_sql(sql, backend)
    cur = conn.execute(rendered, params) if backend == "sqlite" else conn.cursor().execute(rendered, params)
    return list(cur.fetchall())


def execute(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> int:
    rendered = render_sql(sql, backend)
    if backend == "sqlite":
        cur = conn.execute(rendered, params)
    else:
        cur = conn.cursor()
        cur.execute(rendered, params)
    return int(cur.rowcount or 0)


def execute_script(conn: Any, backend: str, sql: str) -> None:
    if backend == "sqlite":
        conn.executescript(sql)
    else:
        statements = [item.strip() for item in sql.split(";") if item.strip()]
        cur = conn.cursor()
        for statement in statements:
            cur.execute(statement)


def is_unique_violation(exc: BaseException) -> bool:
    if isinstance(exc, sqlite3.IntegrityError):
        return "UNIQUE" in str(exc).upper()
    return isinstance(exc, pg_errors.UniqueViolation)


STORE_ERRORS: tuple[type[BaseException], ...] = (sqlite3.Error, psycopg.Error, OSError)


@contextmanager
def transaction(locator: str, backend: str) -> Iterator[Any]:
    conn = connect(locator, backend)
    try:
        with conn:
            yield conn
    finally:
        conn.close()
