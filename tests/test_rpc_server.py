"""
Test suite for the RPC server

Tests route registration and the HTTP endpoints of a running server.
"""

import asyncio
import http.client
import json
import logging
import threading
import time
import unittest
import urllib.error
import urllib.request

from ezrpc.core import FunctionTree, FALLBACK_MESSAGE
from ezrpc.communication import CallRequest, CallResponse, RPCServer, build_route_table


def add(pair):
    return pair[0] + pair[1]


def boom(args):
    raise Exception("boom")


def post_json(url, data=None, raw=None, headers=None, method="POST"):
    """POST a JSON body and return (status, headers, decoded body)."""
    body = raw if raw is not None else json.dumps(data).encode()
    req = urllib.request.Request(
        url,
        data=body,
        headers={'Content-Type': 'application/json', **(headers or {})},
        method=method
    )
    try:
        with urllib.request.urlopen(req, timeout=5) as response:
            return response.status, response.headers, json.loads(response.read().decode())
    except urllib.error.HTTPError as e:
        payload = e.read().decode()
        return e.code, e.headers, json.loads(payload) if payload else None


class TestBuildRouteTable(unittest.TestCase):
    """Test binding endpoint paths to routes."""

    def test_routes_for_callable_leaves(self):
        routes = build_route_table({"math": {"add": add}, "version": "1.0", "hello": boom})

        self.assertEqual(set(routes), {"/call/math/add", "/call/hello"})
        self.assertIs(routes["/call/math/add"].function, add)
        self.assertEqual(routes["/call/math/add"].endpoint.dotted, "math.add")

    def test_invalid_names_not_routed(self):
        with self.assertLogs("ezrpc.core.function_tree", level="WARNING"):
            routes = build_route_table({"math": {"add": add, "1bad": add}})
        self.assertEqual(list(routes), ["/call/math/add"])

    def test_route_table_is_read_only(self):
        routes = build_route_table({"add": add})
        with self.assertRaises(TypeError):
            routes["/call/other"] = None

    def test_registration_lines_follow_verbosity(self):
        with self.assertLogs("ezrpc.test", level="DEBUG") as logs:
            build_route_table({"add": add}, logger=logging.getLogger("ezrpc.test"), verbosity=0)
        self.assertEqual(logs.records[0].levelname, "DEBUG")
        self.assertIn("setup: /call/add", logs.output[0])


class TestRPCServer(unittest.TestCase):
    """Test a running RPC server over HTTP."""

    def setUp(self):
        """Set up test fixtures."""
        self.after_calls = []

        tree = FunctionTree()
        tree.add("math.add", add)
        tree.add("math.fail", boom)
        tree.add("math.1bad", add)
        tree.add("version", "1.0")

        self.server = RPCServer(
            interface=tree,
            host="127.0.0.1",
            port=0,  # Use random port for testing
            after_each_call=[self.after_calls.append],
            verbosity=0
        )

    def tearDown(self):
        """Clean up after tests."""
        if self.server.is_running:
            self.server.stop()

    def test_server_start_stop(self):
        self.assertFalse(self.server.is_running)
        self.assertTrue(self.server.start())
        self.assertTrue(self.server.is_running)
        self.assertNotEqual(self.server.port, 0)

        self.assertTrue(self.server.stop())
        self.assertFalse(self.server.is_running)

    def test_interface_endpoint(self):
        self.server.start()
        url = self.server.get_endpoint_url("/interface")

        status, _, first = post_json(url, {"ignored": True})
        _, _, second = post_json(url)

        self.assertEqual(status, 200)
        self.assertEqual(first["interface"], {
            "math": {"add": "function", "fail": "function", "1bad": "function"},
            "version": "value"
        })
        self.assertIn("id", first["info"])
        self.assertNotEqual(first["info"]["id"], second["info"]["id"])

    def test_call_success(self):
        self.server.start()

        status, _, data = post_json(self.server.get_endpoint_url("/call/math/add"), [[2, 3], {}])

        self.assertEqual(status, 200)
        self.assertEqual(data, {"value": 5})

    def test_call_error(self):
        self.server.start()

        status, _, data = post_json(self.server.get_endpoint_url("/call/math/fail"), [[2, 3], {}])

        self.assertEqual(status, 200)
        self.assertNotIn("value", data)
        self.assertEqual(data["error"]["endpoint"], "math.fail()")
        self.assertEqual(data["error"]["arguments"], [2, 3])
        self.assertEqual(data["error"]["message"], "boom")
        self.assertEqual(data["error"]["name"], "Exception")

    def test_after_hooks_run_once_per_call(self):
        self.server.start()

        post_json(self.server.get_endpoint_url("/call/math/add"), [[2, 3], {}])
        post_json(self.server.get_endpoint_url("/call/math/fail"), [[2, 3], {}])

        self.assertEqual(len(self.after_calls), 2)
        self.assertIsNone(self.after_calls[0].error)
        self.assertIsNotNone(self.after_calls[1].error)

    def test_invalid_name_not_registered(self):
        self.server.start()

        status, _, data = post_json(self.server.get_endpoint_url("/call/math/1bad"), [[2, 3], {}])
        self.assertEqual(status, 404)
        self.assertEqual(data["error"], "Endpoint not found")

        status, _, data = post_json(self.server.get_endpoint_url("/call/math/add"), [[1, 1], {}])
        self.assertEqual(data, {"value": 2})

    def test_constants_not_callable(self):
        self.server.start()
        status, _, _ = post_json(self.server.get_endpoint_url("/call/version"), [None, {}])
        self.assertEqual(status, 404)

    def test_get_not_routed(self):
        self.server.start()
        with self.assertRaises(urllib.error.HTTPError) as cm:
            urllib.request.urlopen(self.server.get_endpoint_url("/interface"), timeout=5)
        self.assertEqual(cm.exception.code, 404)

    def test_invalid_json(self):
        self.server.start()
        status, _, data = post_json(self.server.get_endpoint_url("/call/math/add"), raw=b"{not json")
        self.assertEqual(status, 400)
        self.assertEqual(data["error"], "Invalid JSON in request body")

    def test_cors_headers(self):
        self.server.start()

        _, headers, _ = post_json(self.server.get_endpoint_url("/call/math/add"), [[2, 3], {}])
        self.assertEqual(headers["Access-Control-Allow-Origin"], "*")

        req = urllib.request.Request(self.server.get_endpoint_url("/call/math/add"), method="OPTIONS")
        with urllib.request.urlopen(req, timeout=5) as response:
            self.assertEqual(response.status, 204)
            self.assertIn("POST", response.headers["Access-Control-Allow-Methods"])

    def test_endpoints_added_after_start_not_exposed(self):
        self.server.start()
        self.server.interface.add("math.late", add)

        status, _, _ = post_json(self.server.get_endpoint_url("/call/math/late"), [[2, 3], {}])
        self.assertEqual(status, 404)

    def test_server_stats(self):
        self.server.start()
        post_json(self.server.get_endpoint_url("/call/math/add"), [[2, 3], {}])

        stats = self.server.get_stats()
        self.assertEqual(stats["calls_handled"], 1)
        self.assertIn("/call/math/add", stats["routes"])
        self.assertTrue(stats["is_running"])

    def test_context_manager(self):
        with self.server as server:
            self.assertTrue(server.is_running)
        self.assertFalse(self.server.is_running)


class TestHookFailures(unittest.TestCase):
    """Test the fallback response over HTTP."""

    def test_after_hook_failure_sends_fallback(self):
        def failing_after(context):
            raise RuntimeError("hook broke")

        server = RPCServer(
            interface={"math": {"add": add}},
            host="127.0.0.1",
            port=0,
            after_each_call=[failing_after],
            verbosity=0
        )
        server.start()
        try:
            with self.assertLogs(server.logger, level="ERROR"):
                status, _, data = post_json(server.get_endpoint_url("/call/math/add"), [[2, 3], {}])

            self.assertEqual(status, 200)
            self.assertEqual(data["error"]["stack"], None)
            self.assertEqual(data["error"]["message"], FALLBACK_MESSAGE)
            self.assertEqual(data["error"]["endpoint"], "math.add()")
        finally:
            server.stop()


class TestConcurrentCalls(unittest.TestCase):
    """Test that calls interleave on the server's event loop."""

    def test_async_calls_interleave(self):
        loop_threads = set()

        async def wait(seconds):
            loop_threads.add(threading.get_ident())
            await asyncio.sleep(seconds)
            return seconds

        server = RPCServer(interface={"wait": wait}, host="127.0.0.1", port=0, verbosity=0)
        server.start()
        results = []
        try:
            url = server.get_endpoint_url("/call/wait")
            threads = [
                threading.Thread(target=lambda: results.append(post_json(url, [0.5, {}])[2]))
                for _ in range(4)
            ]
            start = time.time()
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(10)
            elapsed = time.time() - start
        finally:
            server.stop()

        self.assertEqual(results, [{"value": 0.5}] * 4)
        self.assertEqual(len(loop_threads), 1)
        self.assertLess(elapsed, 1.8)


def post_with_length(server, path, content_length):
    """POST headers only, declaring ``content_length``; return (status, Connection header, body)."""
    conn = http.client.HTTPConnection("127.0.0.1", server.port, timeout=5)
    try:
        conn.putrequest("POST", path)
        conn.putheader("Content-Type", "application/json")
        conn.putheader("Content-Length", content_length)
        conn.endheaders()
        response = conn.getresponse()
        return response.status, response.getheader("Connection"), json.loads(response.read().decode())
    finally:
        conn.close()


class TestRequestFraming(unittest.TestCase):
    """Test the request size limit and Content-Length validation."""

    def setUp(self):
        self.server = RPCServer(
            interface={"math": {"add": add}},
            host="127.0.0.1",
            port=0,
            max_request_size_mb=0.001,
            verbosity=0
        )
        self.server.start()

    def tearDown(self):
        self.server.stop()

    def test_fractional_limit(self):
        self.assertEqual(self.server.max_request_bytes, 1048)

    def test_oversized_request_rejected(self):
        status, connection, data = post_with_length(self.server, "/call/math/add", "4096")

        self.assertEqual(status, 413)
        self.assertEqual(connection, "close")
        self.assertIn("exceeds the limit of 1048 bytes", data["error"])
        self.assertEqual(self.server.get_stats()["calls_handled"], 0)

    def test_request_under_limit_accepted(self):
        status, _, data = post_json(self.server.get_endpoint_url("/call/math/add"), [[2, 3], {}])
        self.assertEqual(status, 200)
        self.assertEqual(data, {"value": 5})

    def test_invalid_content_length_rejected(self):
        for content_length in ("-5", "abc"):
            status, connection, data = post_with_length(self.server, "/call/math/add", content_length)

            self.assertEqual(status, 400, content_length)
            self.assertEqual(connection, "close")
            self.assertIn("Invalid Content-Length header", data["error"])


class TestBaseExceptionContainment(unittest.TestCase):
    """Test that SystemExit raised by an endpoint does not take the server down."""

    def test_server_keeps_serving_after_system_exit(self):
        after_calls = []

        def quit_server(args):
            raise SystemExit(3)

        server = RPCServer(
            interface={"add": add, "quit": quit_server},
            host="127.0.0.1",
            port=0,
            after_each_call=[after_calls.append],
            verbosity=0
        )
        server.start()
        try:
            status, _, data = post_json(server.get_endpoint_url("/call/quit"), [None, {}])
            self.assertEqual(status, 200)
            self.assertEqual(data["error"]["name"], "SystemExit")

            status, _, data = post_json(server.get_endpoint_url("/call/add"), [[2, 3], {}])
            self.assertEqual(data, {"value": 5})

            self.assertEqual(len(after_calls), 2)
            self.assertTrue(server.loop_thread.is_alive())
        finally:
            server.stop()


class TestStopWithRunningCalls(unittest.TestCase):
    """Test that stopping the server still answers calls in flight."""

    def setUp(self):
        async def wait(seconds):
            await asyncio.sleep(seconds)
            return seconds

        self.server = RPCServer(interface={"wait": wait}, host="127.0.0.1", port=0, verbosity=0)
        self.server.start()

    def tearDown(self):
        self.server.stop()

    def _start_call(self, seconds):
        results = []
        url = self.server.get_endpoint_url("/call/wait")
        thread = threading.Thread(target=lambda: results.append(post_json(url, [seconds, {}])))
        thread.start()
        time.sleep(0.2)
        return thread, results

    def test_stop_waits_for_running_calls(self):
        thread, results = self._start_call(0.5)

        self.assertTrue(self.server.stop())
        thread.join(5)

        status, _, data = results[0]
        self.assertEqual(status, 200)
        self.assertEqual(data, {"value": 0.5})

    def test_stop_cancels_calls_that_outlive_timeout(self):
        thread, results = self._start_call(3)

        start = time.time()
        with self.assertLogs(self.server.logger, level="WARNING"):
            self.assertTrue(self.server.stop(timeout=0.3))
        thread.join(5)

        self.assertLess(time.time() - start, 3)
        status, _, data = results[0]
        self.assertEqual(status, 200)
        self.assertEqual(data["error"]["name"], "CancelledError")
        self.assertEqual(data["error"]["endpoint"], "wait()")

    def test_dispatch_after_stop_sends_fallback(self):
        route = self.server.routes["/call/wait"]
        self.server.stop()

        response = CallResponse()
        self.server.dispatch(route, CallRequest(path="/call/wait", body=[0, {}]), response)

        error = json.loads(response.body)["error"]
        self.assertEqual(error["message"], FALLBACK_MESSAGE)
        self.assertEqual(error["endpoint"], "wait()")


if __name__ == "__main__":
    # Set up logging for tests
    logging.basicConfig(level=logging.WARNING)

    unittest.main(verbosity=2)
