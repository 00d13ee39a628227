import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app.stores import (
    MemoryAuditLogStore,
    MemoryConnectionStore,
    MemoryExecutionRunStore,
    MemoryToolSpecStore,
    MemoryToolStateStore,
)


class TestMemoryExecutionRunStore(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryExecutionRunStore()

    def test_create_defaults(self) -> None:
        run = self.store.create_run({"org_id": "o1", "tool_id": "t1", "action_id": "a", "input": {"q": 1}})
        self.assertEqual(run["status"], "pending")
        self.assertEqual(run["retries"], 0)
        self.assertEqual(run["logs"], [])
        self.assertNotIn("_seq", run)

    def test_scoped_by_org_and_tool(self) -> None:
        run = self.store.create_run({"org_id": "o1", "tool_id": "t1"})
        self.assertIsNone(self.store.get_run(run["id"], "o2", "t1"))
        self.assertIsNone(self.store.get_run(run["id"], "o1", "t2"))
        self.assertIsNone(self.store.update_run(run["id"], "o2", "t1", {"status": "failed"}))
        self.assertEqual(self.store.get_run(run["id"], "o1", "t1")["status"], "pending")

    def test_update_only_known_fields(self) -> None:
        run = self.store.create_run({"org_id": "o1", "tool_id": "t1"})
        updated = self.store.update_run(run["id"], "o1", "t1", {"status": "running", "org_id": "o9"})
        self.assertEqual(updated["status"], "running")
        self.assertEqual(updated["org_id"], "o1")

    def test_update_missing_run(self) -> None:
        self.assertIsNone(self.store.update_run("nope", "o1", "t1", {"status": "failed"}))

    def test_returned_rows_are_copies(self) -> None:
        run = self.store.create_run({"org_id": "o1", "tool_id": "t1"})
        run["logs"].append({"id": "x"})
        self.assertEqual(self.store.get_run(run["id"], "o1", "t1")["logs"], [])

    def test_list_newest_first_with_limit(self) -> None:
        ids = [self.store.create_run({"org_id": "o1", "tool_id": "t1"})["id"] for _ in range(3)]
        self.store.create_run({"org_id": "o1", "tool_id": "other"})
        listed = self.store.list_runs("o1", "t1", limit=2)
        self.assertEqual([r["id"] for r in listed], [ids[2], ids[1]])


class TestMemoryAuditLogStore(unittest.TestCase):
    def test_insert_and_filter(self) -> None:
        store = MemoryAuditLogStore()
        store.insert({"org_id": "o1", "action_name": "a"})
        store.insert({"org_id": "o2", "action_name": "b"})
        self.assertEqual(len(store.list_rows()), 2)
        rows = store.list_rows("o1")
        self.assertEqual([r["action_name"] for r in rows], ["a"])
        self.assertTrue(rows[0]["id"])


class TestMemoryConnectionStore(unittest.TestCase):
    def test_lookup(self) -> None:
        store = MemoryConnectionStore()
        connection_id = store.create_connection("o1", "github")
        self.assertEqual(store.get_connection_id("o1", "github"), connection_id)
        self.assertIsNone(store.get_connection_id("o1", "slack"))
        self.assertIsNone(store.get_connection_id("o2", "github"))


class TestMemoryToolStores(unittest.TestCase):
    def test_state_round_trip_is_isolated(self) -> None:
        store = MemoryToolStateStore()
        self.assertEqual(store.load_state("o1", "t1"), {})
        state = {"github": {"issues": [{"title": "x"}]}}
        store.save_state("o1", "t1", state)
        state["github"]["issues"].clear()
        self.assertEqual(store.load_state("o1", "t1")["github"]["issues"], [{"title": "x"}])

    def test_spec_lookup(self) -> None:
        store = MemoryToolSpecStore()
        self.assertIsNone(store.get_spec("o1", "t1"))
        store.put_spec("o1", "t1", {"actions": []})
        self.assertEqual(store.get_spec("o1", "t1"), {"actions": []})
        self.assertIsNone(store.get_spec("o2", "t1"))


if __name__ == "__main__":
    unittest.main()
