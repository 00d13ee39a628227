import os
import sys
import unittest

import psycopg2.extras


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app.db import _redact_params, execute, fetch_all, fetch_one, get_db_stats, reset_db_stats


class FakeCursor:
    def __init__(self, rows) -> None:
        self.rows = rows
        self.rowcount = len(rows)
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params):
        self.executed.append((sql, params))

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConn:
    def __init__(self, rows=None) -> None:
        self.cursor_obj = FakeCursor(rows or [])

    def cursor(self, cursor_factory=None):
        return self.cursor_obj


class TestDbHelpers(unittest.TestCase):
    def test_redact_params(self) -> None:
        long_text = "x" * 100
        redacted = _redact_params([b"abc", psycopg2.extras.Json({"token": "t"}), long_text, 5])
        self.assertEqual(redacted[0], "<bytes:3>")
        self.assertEqual(redacted[1], "<json>")
        self.assertTrue(redacted[2].startswith("x" * 40))
        self.assertLess(len(redacted[2]), len(long_text))
        self.assertEqual(redacted[3], 5)
        self.assertIsNone(_redact_params(None))

    def test_queries_are_counted(self) -> None:
        reset_db_stats()
        conn = FakeConn([{"id": "r1"}, {"id": "r2"}])
        self.assertEqual(fetch_one(conn, "select 1", query_name="runs.get"), {"id": "r1"})
        self.assertEqual(len(fetch_all(conn, "select 1", ["o1"])), 2)
        self.assertEqual(execute(conn, "update x set y=1"), 2)
        stats = get_db_stats()
        self.assertEqual(stats["queries"], 3)
        self.assertGreaterEqual(stats["total_ms"], 0.0)
        self.assertEqual(conn.cursor_obj.executed[1], ("select 1", ["o1"]))

    def test_fetch_one_empty(self) -> None:
        self.assertIsNone(fetch_one(FakeConn([]), "select 1"))


if __name__ == "__main__":
    unittest.main()
