"""
HTTP Server for RPC Endpoints

This module exposes a FunctionTree over HTTP. When the server starts it binds
one ``/call/...`` route per function in the tree plus the ``/interface``
discovery route, then hands every call to the call pipeline running on the
server's event loop.
"""

import asyncio
import concurrent.futures
import json
import logging
import threading
import time
import uuid
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional, Sequence, Union
from urllib.parse import urlparse

from .rpc_protocol import (
    CallRequest, CallResponse, INTERFACE_ROUTE, ALLOWED_METHODS, ALLOWED_HEADERS,
    EndpointNotFoundError, InvalidRequestError, RequestTooLargeError, create_status_body,
    decode_json_body
)
from ..config import config
from ..core.call_interface import create_fallback_envelope
from ..core.call_pipeline import CallPipeline, Hook
from ..core.function_tree import EndpointPath, FunctionTree, enumerate_endpoints, describe


class Route(NamedTuple):
    """An endpoint path bound to its function."""
    endpoint: EndpointPath
    function: Callable[[Any], Any]


def build_route_table(tree: Union[FunctionTree, Mapping[str, Any]],
                      logger: Optional[logging.Logger] = None,
                      verbosity: int = 1) -> Mapping[str, Route]:
    """
    Bind every valid, callable leaf of the tree to its ``/call/...`` route.

    Leaves with invalid names are skipped by the enumerator; leaves that are
    not callable (constants) are listed in the interface but never routed.

    Args:
        tree: FunctionTree or plain nested mapping
        logger: Logger for registration lines
        verbosity: Registration lines are logged at INFO when positive

    Returns:
        Read-only mapping of route path to Route
    """
    logger = logger or logging.getLogger(__name__)
    level = logging.INFO if verbosity else logging.DEBUG
    tree = FunctionTree.from_mapping(tree)

    routes: Dict[str, Route] = {}
    for endpoint in enumerate_endpoints(tree):
        endpoint_function = tree.get(endpoint)
        if callable(endpoint_function):
            logger.log(level, f"setup: {endpoint.route}")
            routes[endpoint.route] = Route(endpoint, endpoint_function)
    return MappingProxyType(routes)


class RPCRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for RPC endpoints."""

    def __init__(self, rpc_server, *args, **kwargs):
        """Initialize the request handler with reference to RPC server."""
        self.rpc_server = rpc_server
        super().__init__(*args, **kwargs)

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        self.rpc_server.logger.debug(format % args)

    def do_GET(self):
        """Routes only accept POST."""
        self.rpc_server.stats["requests_handled"] += 1
        self._send_error_response(404, "Endpoint not found")

    def do_OPTIONS(self):
        """Answer CORS preflight requests."""
        self.send_response(204)
        self._send_cors_headers()
        self.send_header('Access-Control-Allow-Methods', ALLOWED_METHODS)
        self.send_header('Access-Control-Allow-Headers', ALLOWED_HEADERS)
        self.send_header('Content-Length', '0')
        self.end_headers()

    def do_POST(self):
        """Handle POST requests."""
        try:
            self.rpc_server.stats["requests_handled"] += 1
            path = urlparse(self.path).path

            if path == INTERFACE_ROUTE:
                self._handle_interface_request()
                return

            route = self.rpc_server.routes.get(path)
            if route is None:
                raise EndpointNotFoundError(path)
            self._handle_call_request(route)

        except EndpointNotFoundError:
            self._send_error_response(404, "Endpoint not found")
        except RequestTooLargeError as e:
            self.rpc_server.stats["errors_encountered"] += 1
            self._send_error_response(413, str(e), {"Connection": "close"})
        except InvalidRequestError as e:
            self.rpc_server.stats["errors_encountered"] += 1
            self._send_error_response(400, str(e), {"Connection": "close"})
        except ValueError:
            self.rpc_server.stats["errors_encountered"] += 1
            self._send_error_response(400, "Invalid JSON in request body")
        except Exception as e:
            self.rpc_server.stats["errors_encountered"] += 1
            self.rpc_server.logger.error(f"Error handling POST request: {e}")
            self._send_error_response(500, f"Internal server error: {str(e)}")

    def _read_body(self) -> bytes:
        """Read the request body, enforcing the configured size limit."""
        raw_length = self.headers.get('Content-Length', '0')
        try:
            content_length = int(raw_length)
        except ValueError:
            content_length = -1
        if content_length < 0:
            raise InvalidRequestError(f"Invalid Content-Length header: {raw_length!r}")

        limit = self.rpc_server.max_request_bytes
        if content_length > limit:
            raise RequestTooLargeError(content_length, limit)
        if content_length == 0:
            return b""
        return self.rfile.read(content_length)

    def _handle_interface_request(self):
        """Describe the function tree; the request body is ignored."""
        self._read_body()
        response = {
            "interface": self.rpc_server.describe_interface(),
            "info": {"id": str(uuid.uuid4())}
        }
        self._send_json_response(200, response)

    def _handle_call_request(self, route: Route):
        """Run a call through the pipeline and write its envelope."""
        body = decode_json_body(self._read_body())
        request = CallRequest(
            path=self.path,
            body=body,
            headers=dict(self.headers.items()),
            client_address=self.client_address
        )
        response = CallResponse()

        self.rpc_server.dispatch(route, request, response)
        self._send_raw_response(response.status_code, response.body, response.headers)

    def _send_cors_headers(self):
        """Add the configured Access-Control-Allow-Origin header."""
        if not self.rpc_server.enable_cors:
            return
        origins = self.rpc_server.allowed_origins
        request_origin = self.headers.get('Origin')
        if "*" in origins:
            self.send_header('Access-Control-Allow-Origin', '*')
        elif request_origin in origins:
            self.send_header('Access-Control-Allow-Origin', request_origin)
            self.send_header('Vary', 'Origin')

    def _send_raw_response(self, status_code: int, response_body: str,
                           headers: Optional[Dict[str, str]] = None):
        """Send an already serialized JSON body."""
        encoded = response_body.encode('utf-8')

        self.send_response(status_code)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(encoded)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self._send_cors_headers()
        self.end_headers()

        self.wfile.write(encoded)

    def _send_json_response(self, status_code: int, data: Dict[str, Any],
                            headers: Optional[Dict[str, str]] = None):
        """Send a JSON response."""
        self._send_raw_response(status_code, json.dumps(data, default=str), headers)

    def _send_error_response(self, status_code: int, message: str,
                             headers: Optional[Dict[str, str]] = None):
        """Send a transport-level error response."""
        self._send_json_response(status_code, create_status_body(status_code, message), headers)


class RPCServer:
    """
    HTTP server that exposes a FunctionTree as remote-callable endpoints.

    Calls are executed on one asyncio event loop owned by the server, so hooks
    and endpoint functions of concurrent requests interleave cooperatively
    while the HTTP transport reads and writes on its own threads.

    Example:
        server = RPCServer(port=4321, interface={"math": {"add": add}})
        server.start()
    """

    def __init__(self,
                 interface: Optional[Union[FunctionTree, Mapping[str, Any]]] = None,
                 port: Optional[int] = None,
                 host: Optional[str] = None,
                 before_each_call: Optional[Sequence[Hook]] = None,
                 after_each_call: Optional[Sequence[Hook]] = None,
                 max_request_size_mb: Optional[float] = None,
                 start_immediately: Optional[bool] = None,
                 verbosity: Optional[int] = None,
                 enable_cors: Optional[bool] = None,
                 allowed_origins: Optional[Sequence[str]] = None):
        """
        Initialize the RPC server.

        Args:
            interface: Function tree to expose
            port: Port to bind to (configured default if None, 0 picks a free port)
            host: Host to bind to (configured default if None)
            before_each_call: Hooks run before every endpoint function
            after_each_call: Hooks run after every endpoint function
            max_request_size_mb: Request body limit, fractions allowed
            start_immediately: Call start() from the constructor
            verbosity: Startup lines are logged at INFO when positive
            enable_cors: Send Access-Control-Allow-Origin headers
            allowed_origins: Origins allowed by CORS, "*" for any
        """
        self.interface = FunctionTree.from_mapping(interface if interface is not None else {})
        self.port = config.network.default_port if port is None else port
        self.host = host or config.network.default_host
        self.max_request_bytes = (
            config.get_max_request_bytes() if max_request_size_mb is None
            else int(max_request_size_mb * 1024 * 1024)
        )
        self.verbosity = config.rpc.verbosity if verbosity is None else verbosity
        self.enable_cors = config.security.enable_cors if enable_cors is None else enable_cors
        self.allowed_origins = (
            config.security.get_allowed_origins() if allowed_origins is None
            else list(allowed_origins)
        )

        # Set up logging
        self.logger = logging.getLogger(f"{__name__}.{self.port}")

        self.pipeline = CallPipeline(before_each_call, after_each_call, logger=self.logger)
        self.routes: Mapping[str, Route] = MappingProxyType({})

        self.server: Optional[ThreadingHTTPServer] = None
        self.server_thread: Optional[threading.Thread] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.loop_thread: Optional[threading.Thread] = None
        self.is_running = False

        # Calls running on the loop, drained by stop()
        self._active_calls = set()
        self._accepting_calls = False
        self._dispatch_lock = threading.Lock()

        # Statistics
        self.stats = {
            "requests_handled": 0,
            "errors_encountered": 0,
            "start_time": None
        }

        if config.rpc.start_immediately if start_immediately is None else start_immediately:
            self.start()

    def _log_startup(self, message: str):
        self.logger.log(logging.INFO if self.verbosity else logging.DEBUG, message)

    def start(self) -> bool:
        """
        Bind all routes and start listening.

        Returns once the server accepts connections.

        Returns:
            True if started successfully, False otherwise
        """
        if self.is_running:
            self.logger.warning("RPC server is already running")
            return True

        try:
            self._log_startup(f"setup {INTERFACE_ROUTE}")
            self.routes = build_route_table(self.interface, self.logger, self.verbosity)

            # Create custom request handler with reference to this server
            def handler_factory(*args, **kwargs):
                return RPCRequestHandler(self, *args, **kwargs)

            self.server = ThreadingHTTPServer((self.host, self.port), handler_factory)
            self.port = self.server.server_address[1]

            self.loop = asyncio.new_event_loop()
            self.loop_thread = threading.Thread(
                target=self._run_loop,
                name=f"rpc-loop-{self.port}",
                daemon=True
            )
            self.server_thread = threading.Thread(
                target=self._run_server,
                name=f"rpc-server-{self.port}",
                daemon=True
            )

            self.is_running = True
            self._accepting_calls = True
            self.stats["start_time"] = time.time()
            self.loop_thread.start()
            self.server_thread.start()

            self._log_startup("=======================")
            self._log_startup(" ez-rpc server started")
            self._log_startup("=======================")
            self.logger.info(f"RPC server listening on {self.host}:{self.port}")
            return True

        except Exception as e:
            self.logger.error(f"Failed to start RPC server: {e}")
            self.is_running = False
            self._close_loop()
            return False

    def stop(self, timeout: float = 5.0) -> bool:
        """
        Stop the RPC server.

        Calls already running get up to ``timeout`` seconds to finish. Calls
        still running after that are cancelled and answered with an error
        envelope, so every accepted request receives a response.

        Args:
            timeout: Maximum time to wait for running calls and for each thread

        Returns:
            True if stopped successfully, False otherwise
        """
        if not self.is_running:
            return True

        try:
            self.is_running = False

            if self.server:
                self.server.shutdown()
                self.server.server_close()

            if self.server_thread and self.server_thread.is_alive():
                self.server_thread.join(timeout)

            with self._dispatch_lock:
                self._accepting_calls = False
            if self.loop and self.loop.is_running():
                drain = asyncio.run_coroutine_threadsafe(self._drain_calls(timeout), self.loop)
                try:
                    drain.result(timeout * 2)
                except concurrent.futures.TimeoutError:
                    self.logger.warning("Calls were still running when the event loop stopped")

            if self.loop:
                self.loop.call_soon_threadsafe(self.loop.stop)
            if self.loop_thread and self.loop_thread.is_alive():
                self.loop_thread.join(timeout)
            self._close_loop()

            self.logger.info("RPC server stopped")
            return True

        except Exception as e:
            self.logger.error(f"Error stopping RPC server: {e}")
            return False

    async def _drain_calls(self, timeout: float):
        """Wait for running calls, then cancel those still running after ``timeout``."""
        if not self._active_calls:
            return
        _, pending = await asyncio.wait(set(self._active_calls), timeout=timeout)
        if pending:
            self.logger.warning(f"Cancelling {len(pending)} call(s) still running at shutdown")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _run_loop(self):
        """Run the event loop calls are executed on (internal method)."""
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def _close_loop(self):
        if self.loop and not self.loop.is_running() and not self.loop.is_closed():
            self.loop.close()

    def _run_server(self):
        """Run the HTTP server (internal method)."""
        try:
            self.server.serve_forever()
        except Exception as e:
            if self.is_running:  # Only log if not intentionally stopped
                self.logger.error(f"RPC server error: {e}")
        finally:
            self.is_running = False

    def dispatch(self, route: Route, request: CallRequest, response: CallResponse) -> None:
        """
        Run a call on the server loop and wait until its response is sent.

        Called from HTTP handler threads. If the call cannot finish, because
        the server is stopping or the call was cancelled before it wrote a
        response, the fallback envelope is sent instead.
        """
        future = None
        with self._dispatch_lock:
            if self._accepting_calls:
                future = asyncio.run_coroutine_threadsafe(
                    self._run_call(route, request, response), self.loop
                )

        if future is not None:
            try:
                future.result()
            except Exception as e:
                self.logger.warning(f"Call to {route.endpoint.display_name} did not complete: {e!r}")

        if not response.sent:
            self.pipeline.stats["fallback_responses"] += 1
            response.send(create_fallback_envelope(route.endpoint, None))

    async def _run_call(self, route: Route, request: CallRequest, response: CallResponse):
        task = asyncio.current_task()
        self._active_calls.add(task)
        try:
            await self.pipeline.handle(route.endpoint, route.function, request, response)
        finally:
            self._active_calls.discard(task)

    def describe_interface(self) -> Dict[str, Any]:
        """Describe the shape of the exposed function tree."""
        return describe(self.interface)

    def get_stats(self) -> Dict[str, Any]:
        """Get server statistics."""
        stats = self.stats.copy()
        if stats["start_time"]:
            stats["uptime_seconds"] = time.time() - stats["start_time"]
        else:
            stats["uptime_seconds"] = 0

        stats.update(self.pipeline.get_statistics())
        stats["is_running"] = self.is_running
        stats["endpoint"] = f"{self.host}:{self.port}"
        stats["routes"] = sorted(self.routes)

        return stats

    def get_endpoint_url(self, path: str = "") -> str:
        """
        Get the full URL for a route.

        Args:
            path: Optional path to append

        Returns:
            Full URL string
        """
        host = "127.0.0.1" if self.host in ("0.0.0.0", "") else self.host
        base_url = f"http://{host}:{self.port}"
        if path:
            if not path.startswith('/'):
                path = '/' + path
            return base_url + path
        return base_url

    def __enter__(self) -> "RPCServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
