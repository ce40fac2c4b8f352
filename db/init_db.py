#!/usr/bin/env python3
"""Apply db/schema.sql to the database pointed to by DATABASE_URL.

Usage:
  python -m db.init_db

The schema is idempotent (IF NOT EXISTS everywhere), so re-running is safe.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Mapping, Optional

from core.storage.postgres.config import PostgresConfig

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

# Transaction control is handled by engine.begin().
_SKIPPED_STATEMENTS = {"BEGIN", "COMMIT"}


def iter_sql_statements(sql: str) -> Iterable[str]:
    """Split a SQL script on semicolons outside quotes, dropping `--` comments.

    No support for dollar quoting; schema.sql does not use it.
    """
    buf: list[str] = []
    quote: Optional[str] = None
    i = 0
    while i < len(sql):
        ch = sql[i]

        if quote is None and sql.startswith("--", i):
            end = sql.find("\n", i)
            i = len(sql) if end == -1 else end
            continue

        if ch in ("'", '"'):
            if quote is None:
                quote = ch
            elif quote == ch:
                if ch == "'" and sql.startswith("''", i):
                    buf.append("''")
                    i += 2
                    continue
                quote = None
        elif ch == ";" and quote is None:
            stmt = "".join(buf).strip()
            buf = []
            if stmt:
                yield stmt
            i += 1
            continue

        buf.append(ch)
        i += 1

    tail = "".join(buf).strip()
    if tail:
        yield tail


def schema_statements(sql: Optional[str] = None) -> list[str]:
    text = SCHEMA_PATH.read_text(encoding="utf-8") if sql is None else sql
    return [s for s in iter_sql_statements(text) if s.upper() not in _SKIPPED_STATEMENTS]


def apply_schema(engine, sql: Optional[str] = None) -> int:
    """Execute every schema statement in one transaction; returns the count."""
    statements = schema_statements(sql)
    with engine.begin() as conn:
        for stmt in statements:
            conn.exec_driver_sql(stmt)
    return len(statements)


def main(environ: Optional[Mapping[str, str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = PostgresConfig.from_env(environ)
    if config is None:
        logger.error("DATABASE_URL is not set")
        return 1

    from sqlalchemy import create_engine

    engine = create_engine(config.database_url, echo=False)
    try:
        count = apply_schema(engine)
    finally:
        engine.dispose()

    logger.info("Database schema applied (%d statements)", count)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
