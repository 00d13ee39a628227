import os
import sys
import unittest
import uuid
from unittest import mock

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from fastapi.testclient import TestClient

os.environ["USE_DB"] = "0"

import app.main as main
from integration_runtime import IntegrationRuntimes


SPEC = {
    "integrations": [{"id": "github", "capabilities": ["github_issues_list"]}],
    "actions": [{"id": "list_issues", "integrationId": "github", "capabilityId": "github_issues_list"}],
    "workflows": [
        {
            "id": "sync",
            "nodes": [
                {"id": "get", "type": "action", "actionId": "list_issues"},
                {"id": "count", "type": "transform", "transform": {"total": {"op": "count", "of": {"var": "steps.get"}}}},
            ],
            "edges": [{"from": "get", "to": "count"}],
        }
    ],
}


class FakeRuntime:
    def __init__(self, results=None) -> None:
        self.results = list(results or [])
        self.calls = []

    def invoke(self, integration_id, capability_id, payload, timeout=None):
        self.calls.append((capability_id, payload))
        result = self.results.pop(0) if self.results else {"status": 200, "data": [{"id": 1}, {"id": 2}]}
        if isinstance(result, Exception):
            raise result
        return result


class TestEngineApi(unittest.TestCase):
    def setUp(self) -> None:
        self.org_id = f"org_{uuid.uuid4().hex[:8]}"
        self.tool_id = "tool1"
        main.spec_store.put_spec(self.org_id, self.tool_id, SPEC)
        self.runtime = FakeRuntime()
        self._runtimes = main.deps["runtimes"]
        main.deps["runtimes"] = IntegrationRuntimes({"github": self.runtime})
        self.client = TestClient(main.app)
        self.headers = {"X-Org-Id": self.org_id, "X-User-Id": "u1"}

    def tearDown(self) -> None:
        main.deps["runtimes"] = self._runtimes

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"ok": True})

    def test_list_capabilities(self) -> None:
        body = self.client.get("/capabilities", params={"integration_id": "slack"}).json()
        self.assertTrue(body["ok"], body)
        ids = {cap["id"] for cap in body["capabilities"]}
        self.assertIn("slack_message_post", ids)
        self.assertTrue(all(cap["integration_id"] == "slack" for cap in body["capabilities"]))
        everything = self.client.get("/capabilities").json()["capabilities"]
        self.assertGreater(len(everything), len(ids))

    def test_org_header_required(self) -> None:
        res = self.client.post(f"/tools/{self.tool_id}/actions/list_issues/run", json={})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "ORG_REQUIRED")

    def test_unknown_tool(self) -> None:
        res = self.client.post("/tools/ghost/actions/list_issues/run", json={}, headers=self.headers)
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "TOOL_NOT_FOUND")

    def test_run_action(self) -> None:
        res = self.client.post(
            f"/tools/{self.tool_id}/actions/list_issues/run",
            json={"input": {"state": "open"}},
            headers=self.headers,
        )
        body = res.json()
        self.assertEqual(res.status_code, 200, body)
        self.assertEqual(body["status"], "completed")
        self.assertEqual(body["output"], [{"id": 1}, {"id": 2}])
        self.assertEqual(self.runtime.calls, [("github_issues_list", {"state": "open"})])

        runs = self.client.get(f"/tools/{self.tool_id}/runs", headers=self.headers).json()["runs"]
        self.assertEqual([r["id"] for r in runs], [body["run_id"]])

    def test_unknown_action_is_404(self) -> None:
        res = self.client.post(f"/tools/{self.tool_id}/actions/nope/run", json={}, headers=self.headers)
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "ACTION_NOT_FOUND")

    def test_invalid_input_is_400(self) -> None:
        res = self.client.post(
            f"/tools/{self.tool_id}/actions/list_issues/run",
            json={"input": {"milestone": "v1"}},
            headers=self.headers,
        )
        self.assertEqual(res.status_code, 400)
        self.assertFalse(res.json()["ok"])

    def test_integration_failure_is_502_then_retry(self) -> None:
        self.runtime.results = [{"status": 403, "data": None}]
        res = self.client.post(f"/tools/{self.tool_id}/actions/list_issues/run", json={}, headers=self.headers)
        self.assertEqual(res.status_code, 502)
        run_id = res.json()["run_id"]

        retry = self.client.post(f"/tools/{self.tool_id}/runs/{run_id}/retry", headers=self.headers)
        body = retry.json()
        self.assertEqual(retry.status_code, 200, body)
        self.assertEqual(body["status"], "retry_started")
        self.assertEqual(body["run_id"], run_id)
        self.assertEqual(body["run_status"], "completed")

    def test_retry_unknown_run(self) -> None:
        res = self.client.post(f"/tools/{self.tool_id}/runs/missing/retry", headers=self.headers)
        self.assertEqual(res.status_code, 404)

    def test_run_workflow(self) -> None:
        res = self.client.post(f"/tools/{self.tool_id}/workflows/sync/run", json={}, headers=self.headers)
        body = res.json()
        self.assertEqual(res.status_code, 200, body)
        self.assertEqual(body["status"], "completed")
        self.assertEqual(body["outputs"]["count"], {"total": 2})

    def test_timeline(self) -> None:
        main.state_store.save_state(self.org_id, self.tool_id, {"github": {"issues": [{"title": "Crash", "created_at": "2026-01-03T10:00:00Z"}]}})
        res = self.client.get(f"/tools/{self.tool_id}/timeline", headers=self.headers)
        body = res.json()
        self.assertTrue(body["ok"], body)
        self.assertEqual(body["timeline"][0]["entity"], "Issue")
        self.assertEqual(body["timeline"][0]["timestamp"], "2026-01-03T10:00:00.000Z")

    def test_join(self) -> None:
        payload = {
            "definition": {"leftField": "id", "rightField": "issue_id", "joinType": "inner"},
            "left": [{"id": 1}, {"id": 2}],
            "right": [{"issue_id": "1", "label": "bug"}],
        }
        body = self.client.post("/joins", json=payload).json()
        self.assertEqual(body["data"], [{"id": 1, "joined_issue_id": "1", "joined_label": "bug"}])
        self.assertEqual(body["stats"]["matched_rows"], 1)

    def test_join_size_limit(self) -> None:
        payload = {"definition": {"leftField": "id", "rightField": "id"}, "left": [{"id": 1}, {"id": 2}, {"id": 3}], "right": []}
        with mock.patch("join_exec.MAX_ROWS_PER_SIDE", 2):
            res = self.client.post("/joins", json=payload)
        self.assertEqual(res.status_code, 413)
        self.assertEqual(res.json()["errors"][0]["code"], "JOIN_SIZE_LIMIT")

    def test_links(self) -> None:
        payload = {
            "source": [{"id": "a", "title": "Crash on login"}],
            "target": [{"id": "b", "title": "crash on login"}],
            "source_field": "title",
            "target_field": "title",
        }
        body = self.client.post("/links", json=payload).json()
        self.assertEqual(body["candidates"], [{"source_id": "a", "target_id": "b", "confidence": 0.9, "reason": "Exact match"}])

    def test_links_require_fields(self) -> None:
        res = self.client.post("/links", json={"source": [], "target": []})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "LINK_INPUT_INVALID")


if __name__ == "__main__":
    unittest.main()
