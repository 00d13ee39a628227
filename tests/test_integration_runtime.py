import os
import sys
import unittest

import httpx


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from engine_errors import PermanentIntegrationError, TransientIntegrationError, ValidationError
from integration_runtime import (
    HttpIntegrationRuntime,
    IntegrationRuntimes,
    classify_error,
    classify_status,
    unwrap_result,
)


class StatusError(Exception):
    def __init__(self, status: int) -> None:
        super().__init__(f"status {status}")
        self.status = status


class TestClassification(unittest.TestCase):
    def test_status_classes(self) -> None:
        self.assertIsInstance(classify_status(503, "down"), TransientIntegrationError)
        self.assertIsInstance(classify_status(429, "slow down"), TransientIntegrationError)
        self.assertIsInstance(classify_status(408, "timeout"), TransientIntegrationError)
        self.assertEqual(classify_status(401, "no").code, "INTEGRATION_UNAUTHORIZED")
        self.assertEqual(classify_status(404, "missing").code, "INTEGRATION_REJECTED")
        self.assertFalse(classify_status(400, "bad").retryable)

    def test_exception_classes(self) -> None:
        self.assertTrue(classify_error(TimeoutError("t")).retryable)
        self.assertTrue(classify_error(ConnectionError("c")).retryable)
        self.assertTrue(classify_error(httpx.ReadTimeout("t")).retryable)
        self.assertTrue(classify_error(httpx.ConnectError("c")).retryable)
        self.assertTrue(classify_error(StatusError(502)).retryable)
        self.assertFalse(classify_error(StatusError(422)).retryable)
        unknown = classify_error(ValueError("odd"))
        self.assertIsInstance(unknown, PermanentIntegrationError)
        self.assertEqual(unknown.code, "INTEGRATION_ERROR")

    def test_engine_errors_pass_through(self) -> None:
        err = ValidationError("bad input")
        self.assertIs(classify_error(err), err)

    def test_unwrap_result(self) -> None:
        self.assertEqual(unwrap_result({"status": 200, "data": [1]}), [1])
        self.assertEqual(unwrap_result([1, 2]), [1, 2])
        with self.assertRaises(TransientIntegrationError):
            unwrap_result({"status": 500, "data": None})


class TestHttpIntegrationRuntime(unittest.TestCase):
    def _runtime(self, handler) -> HttpIntegrationRuntime:
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return HttpIntegrationRuntime("https://gateway.test/v1/", headers={"X-Org-Id": "org1"}, client=client)

    def test_posts_input_and_unwraps_data(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = request.content
            seen["org"] = request.headers.get("x-org-id")
            return httpx.Response(200, json={"data": [{"id": 1}]})

        result = self._runtime(handler).invoke("github", "github_issues_list", {"state": "open"})
        self.assertEqual(result, {"status": 200, "data": [{"id": 1}]})
        self.assertEqual(seen["url"], "https://gateway.test/v1/github/github_issues_list")
        self.assertIn(b'"state"', seen["body"])
        self.assertEqual(seen["org"], "org1")

    def test_server_error_is_transient(self) -> None:
        runtime = self._runtime(lambda request: httpx.Response(502, text="bad gateway"))
        with self.assertRaises(TransientIntegrationError):
            runtime.invoke("slack", "slack_message_post", {"channel": "C1", "text": "x"})

    def test_client_error_is_permanent(self) -> None:
        runtime = self._runtime(lambda request: httpx.Response(403, text="forbidden"))
        with self.assertRaises(PermanentIntegrationError) as ctx:
            runtime.invoke("slack", "slack_message_post", {"channel": "C1", "text": "x"})
        self.assertEqual(ctx.exception.code, "INTEGRATION_UNAUTHORIZED")

    def test_invalid_json(self) -> None:
        runtime = self._runtime(lambda request: httpx.Response(200, text="not json"))
        with self.assertRaises(PermanentIntegrationError) as ctx:
            runtime.invoke("notion", "notion_pages_search", {})
        self.assertEqual(ctx.exception.code, "INTEGRATION_BAD_RESPONSE")

    def test_timeout_bounds_the_request(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["timeout"] = request.extensions.get("timeout")
            raise httpx.ReadTimeout("read timed out", request=request)

        with self.assertRaises(httpx.ReadTimeout) as ctx:
            self._runtime(handler).invoke("github", "github_issues_list", {}, timeout=2.5)
        self.assertEqual(seen["timeout"]["read"], 2.5)
        error = classify_error(ctx.exception)
        self.assertIsInstance(error, TransientIntegrationError)
        self.assertEqual(error.code, "INTEGRATION_TIMEOUT")


class TestIntegrationRuntimes(unittest.TestCase):
    def test_lookup(self) -> None:
        runtime = HttpIntegrationRuntime("https://gateway.test")
        runtimes = IntegrationRuntimes({"slack": runtime, "github": runtime})
        self.assertIs(runtimes.get("slack"), runtime)
        self.assertIsNone(runtimes.get("linear"))
        self.assertEqual(runtimes.ids(), ["github", "slack"])


if __name__ == "__main__":
    unittest.main()
