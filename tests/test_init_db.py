"""Tests for the schema bootstrap script."""

from __future__ import annotations

from unittest.mock import MagicMock

from db.init_db import apply_schema, iter_sql_statements, main, schema_statements


def test_splits_on_semicolons_outside_quotes():
    sql = "INSERT INTO t VALUES ('a;b'); SELECT 1;\nSELECT 'it''s';"

    assert list(iter_sql_statements(sql)) == [
        "INSERT INTO t VALUES ('a;b')",
        "SELECT 1",
        "SELECT 'it''s'",
    ]


def test_strips_line_comments():
    sql = "-- header; with semicolon\nCREATE TABLE a (id INT); -- trailing\n"

    assert list(iter_sql_statements(sql)) == ["CREATE TABLE a (id INT)"]


def test_schema_statements_skip_transaction_control():
    statements = schema_statements()

    assert statements
    assert all(s.upper() not in {"BEGIN", "COMMIT"} for s in statements)
    assert statements[0].startswith("CREATE TABLE IF NOT EXISTS user_balances")


def test_apply_schema_runs_every_statement_in_one_transaction():
    engine = MagicMock()
    conn = engine.begin.return_value.__enter__.return_value

    count = apply_schema(engine, "BEGIN; CREATE TABLE a (id INT); CREATE TABLE b (id INT); COMMIT;")

    assert count == 2
    engine.begin.assert_called_once()
    assert [c.args[0] for c in conn.exec_driver_sql.call_args_list] == [
        "CREATE TABLE a (id INT)",
        "CREATE TABLE b (id INT)",
    ]


def test_main_requires_database_url():
    assert main({}) == 1
