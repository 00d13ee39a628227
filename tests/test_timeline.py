import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from timeline import (
    DEFAULT_EXTRACTORS,
    RUN_FALLBACK_INTEGRATION,
    aggregate_timeline,
    normalize_timestamp,
    register_extractor,
)


SPEC = {"actions": [{"id": "list_issues", "integrationId": "github", "capabilityId": "github_issues_list"}]}


class FakeRuns:
    def __init__(self, runs) -> None:
        self.runs = runs
        self.calls = []

    def list_runs(self, org_id, tool_id, limit=20):
        self.calls.append((org_id, tool_id, limit))
        return list(self.runs[:limit])


class FakeState:
    def __init__(self, state) -> None:
        self.state = state

    def load_state(self, org_id, tool_id):
        return self.state


STATE = {
    "github": {
        "issues": [{"title": "Crash", "html_url": "https://github.com/o/r/issues/1", "state": "open", "created_at": "2026-01-03T10:00:00Z"}],
        "commits": [{"commit": {"message": "fix crash", "author": {"name": "Ada", "date": "2026-01-04T08:00:00Z"}}}],
    },
    "linear": {"issues": [{"title": "Triage", "state": {"name": "Todo"}, "updatedAt": "2026-01-02T00:00:00.000Z"}]},
    "slack": {"messages": [{"text": "deploying", "user": "U1", "ts": "1767225600.000200"}]},
    "notion": {"pages": [{"title": "Runbook", "url": "https://notion.so/x", "last_edited_time": "2026-01-05T12:00:00.000Z"}]},
}

RUNS = [
    {"id": "r3", "status": "running", "action_id": "list_issues", "created_at": "2026-01-06T00:00:00Z"},
    {"id": "r2", "status": "failed", "action_id": None, "workflow_id": "triage", "trigger_id": "manual", "created_at": "2026-01-05T00:00:00Z"},
    {"id": "r1", "status": "completed", "action_id": "list_issues", "trigger_id": "manual", "created_at": "2025-12-31T00:00:00Z"},
]


class TestAggregateTimeline(unittest.TestCase):
    def _deps(self, runs=RUNS, state=STATE) -> dict:
        return {"runs": FakeRuns(runs), "state": FakeState(state)}

    def test_events_sorted_newest_first(self) -> None:
        events = aggregate_timeline("org1", "tool1", SPEC, self._deps())
        self.assertEqual(
            [(e["entity"], e["action"]) for e in events],
            [
                ("Page", "Page Edited"),
                ("Tool", "Workflow Run"),
                ("Repo", "Commit Pushed"),
                ("Issue", "Issue Updated"),
                ("Ticket", "Ticket Updated"),
                ("Message", "Message Sent"),
                ("Tool", "list_issues"),
            ],
        )

    def test_run_events(self) -> None:
        events = aggregate_timeline("org1", "tool1", SPEC, self._deps(state={}))
        self.assertEqual(len(events), 2)
        workflow_event, action_event = events
        self.assertEqual(workflow_event["source_integration"], RUN_FALLBACK_INTEGRATION)
        self.assertEqual(workflow_event["metadata"], {"run_id": "r2", "status": "failed", "trigger_id": "manual"})
        self.assertEqual(action_event["source_integration"], "github")
        self.assertEqual(action_event["timestamp"], "2025-12-31T00:00:00.000Z")

    def test_uses_run_history_limit(self) -> None:
        deps = self._deps()
        aggregate_timeline("org1", "tool1", SPEC, deps)
        self.assertEqual(deps["runs"].calls, [("org1", "tool1", 20)])

    def test_integration_metadata(self) -> None:
        events = aggregate_timeline("org1", "tool1", SPEC, self._deps(runs=[]))
        by_entity = {e["entity"]: e for e in events}
        self.assertEqual(by_entity["Ticket"]["metadata"], {"title": "Triage", "status": "Todo"})
        self.assertEqual(by_entity["Repo"]["metadata"], {"message": "fix crash", "author": "Ada"})
        self.assertEqual(by_entity["Message"]["timestamp"], "2026-01-01T00:00:00.000Z")
        self.assertEqual(by_entity["Issue"]["metadata"]["url"], "https://github.com/o/r/issues/1")

    def test_untimestamped_items_sort_last(self) -> None:
        state = {"github": {"issues": [{"title": "No date"}, {"title": "Dated", "created_at": "2026-01-01T00:00:00Z"}]}}
        events = aggregate_timeline("org1", "tool1", SPEC, self._deps(runs=[], state=state))
        self.assertEqual([e["metadata"]["title"] for e in events], ["Dated", "No date"])
        self.assertIsNone(events[-1]["timestamp"])

    def test_out_of_range_timestamps_sort_last(self) -> None:
        state = {
            "github": {
                "issues": [
                    {"title": "millis", "created_at": 1700000000000},
                    {"title": "nan", "created_at": float("nan")},
                    {"title": "ok", "created_at": "2026-01-01T00:00:00Z"},
                ]
            },
            "slack": {"messages": [{"text": "huge", "ts": "1e400"}]},
        }
        events = aggregate_timeline("org1", "tool1", SPEC, self._deps(runs=[], state=state))
        self.assertEqual(events[0]["metadata"]["title"], "ok")
        self.assertEqual([e["timestamp"] for e in events[1:]], [None, None, None])

    def test_ties_keep_input_order(self) -> None:
        stamp = "2026-01-01T00:00:00Z"
        state = {"github": {"issues": [{"title": "a", "created_at": stamp}, {"title": "b", "created_at": stamp}, {"title": "c", "created_at": stamp}]}}
        events = aggregate_timeline("org1", "tool1", SPEC, self._deps(runs=[], state=state))
        self.assertEqual([e["metadata"]["title"] for e in events], ["a", "b", "c"])

    def test_repeated_calls_identical(self) -> None:
        state = {"github": {"issues": [{"title": "No date"}]}, "slack": {"messages": [{"text": "x"}]}}
        deps = self._deps(state=state)
        self.assertEqual(aggregate_timeline("org1", "tool1", SPEC, deps), aggregate_timeline("org1", "tool1", SPEC, deps))

    def test_register_extractor(self) -> None:
        def jira(section):
            return [{"timestamp": None, "entity": "Ticket", "source_integration": "jira", "action": "Ticket Synced", "metadata": {}}]

        table = register_extractor("jira", jira)
        self.assertNotIn("jira", DEFAULT_EXTRACTORS)
        with self.assertRaises(TypeError):
            table["other"] = jira
        deps = self._deps(runs=[], state={"jira": {"issues": []}})
        deps["extractors"] = table
        events = aggregate_timeline("org1", "tool1", SPEC, deps)
        self.assertEqual(events[0]["source_integration"], "jira")


class TestNormalizeTimestamp(unittest.TestCase):
    def test_formats(self) -> None:
        self.assertEqual(normalize_timestamp("2026-01-01T00:00:00Z"), "2026-01-01T00:00:00.000Z")
        self.assertEqual(normalize_timestamp("2026-01-01T02:00:00+02:00"), "2026-01-01T00:00:00.000Z")
        self.assertEqual(normalize_timestamp(0), "1970-01-01T00:00:00.000Z")
        self.assertIsNone(normalize_timestamp("yesterday"))
        self.assertIsNone(normalize_timestamp(None))
        self.assertIsNone(normalize_timestamp(1700000000000))
        self.assertIsNone(normalize_timestamp(float("inf")))
        self.assertIsNone(normalize_timestamp("0001-01-01T00:00:00+01:00"))


if __name__ == "__main__":
    unittest.main()
