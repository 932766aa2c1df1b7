"""
RPC Client for Remote Function Calls

This module provides a client that discovers a server's function tree and
calls its endpoints, either by name or through an attribute proxy built from
the discovered interface.
"""

import json
import logging
import socket
import time
from typing import Any, Dict, Optional, Sequence, Union
import urllib.request
import urllib.error

from .rpc_protocol import (
    INTERFACE_ROUTE, RPCError, RPCTimeoutError, RPCConnectionError,
    EndpointNotFoundError, RemoteCallError
)
from ..config import config
from ..core.function_tree import EndpointPath, FUNCTION_MARKER


class EndpointProxy:
    """
    Attribute access over a discovered interface.

    Branches are returned as nested proxies and functions as callables:

        api = client.proxy()
        api.math.add([2, 3])   # POST /call/math/add with [[2, 3], {}]
    """

    def __init__(self, client: "RPCClient", description: Dict[str, Any], path: Sequence[str] = ()):
        self._client = client
        self._description = description
        self._path = tuple(path)

    def __getattr__(self, name: str):
        description = self.__dict__.get("_description")
        if description is None or name not in description:
            raise AttributeError(
                f"'{'.'.join(self.__dict__.get('_path', ()) + (name,))}' is not part of the remote interface"
            )

        node = description[name]
        path = self._path + (name,)
        if isinstance(node, dict):
            return EndpointProxy(self._client, node, path)
        if node != FUNCTION_MARKER:
            raise AttributeError(f"'{'.'.join(path)}' is not a remote function")

        def remote_function(args: Any = None, metadata: Optional[Dict[str, Any]] = None) -> Any:
            return self._client.call(path, args, metadata)

        remote_function.__name__ = name
        return remote_function

    def __dir__(self):
        return list(self._description)

    def __repr__(self) -> str:
        return f"EndpointProxy({'.'.join(self._path) or '<root>'})"


class RPCClient:
    """
    Client for calling endpoints on an RPC server.

    Connection failures, timeouts and HTTP 5xx responses are retried up to
    ``max_retries`` times. A retried call may reach the server more than once,
    so pass ``max_retries=0`` when remote functions are not idempotent.
    """

    def __init__(self,
                 base_url: str,
                 default_timeout: Optional[float] = None,
                 max_retries: Optional[int] = None,
                 retry_delay: Optional[float] = None):
        """
        Initialize the RPC client.

        Args:
            base_url: Server URL, e.g. ``http://127.0.0.1:4321``
            default_timeout: Default timeout for requests in seconds
            max_retries: Maximum number of retry attempts
            retry_delay: Delay between retries in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.default_timeout = config.rpc.client_timeout_seconds if default_timeout is None else default_timeout
        self.max_retries = config.rpc.client_max_retries if max_retries is None else max_retries
        self.retry_delay = config.rpc.client_retry_delay if retry_delay is None else retry_delay

        # Set up logging
        self.logger = logging.getLogger(__name__)

        self.interface_id: Optional[str] = None

        # Statistics
        self.stats = {
            "requests_sent": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "total_response_time": 0.0,
            "retry_attempts": 0
        }

    def get_interface(self, timeout_seconds: Optional[float] = None) -> Dict[str, Any]:
        """
        Fetch the discovery response of the server.

        Returns:
            ``{"interface": ..., "info": {"id": ...}}``
        """
        response_data = self._send_request_with_retry(
            INTERFACE_ROUTE, {}, timeout_seconds or self.default_timeout
        )
        self.interface_id = response_data.get("info", {}).get("id")
        return response_data

    def call(self,
             endpoint: Union[str, Sequence[str], EndpointPath],
             args: Any = None,
             metadata: Optional[Dict[str, Any]] = None,
             timeout_seconds: Optional[float] = None) -> Any:
        """
        Call a remote endpoint.

        Args:
            endpoint: Dotted name or sequence of names, e.g. "math.add"
            args: Value passed to the remote function
            metadata: Context passed to the server's hooks
            timeout_seconds: Request timeout (uses default if None)

        Returns:
            The remote function's return value

        Raises:
            RemoteCallError: If the server answered with an error envelope
            EndpointNotFoundError: If the server has no such endpoint
            RPCError: If the request failed
        """
        endpoint = EndpointPath.parse(endpoint)
        response_data = self._send_request_with_retry(
            endpoint.route, [args, metadata or {}], timeout_seconds or self.default_timeout
        )

        if "error" in response_data:
            raise RemoteCallError(response_data["error"])
        return response_data.get("value")

    def proxy(self) -> EndpointProxy:
        """Discover the interface and return an attribute proxy over it."""
        return EndpointProxy(self, self.get_interface()["interface"])

    def _send_request_with_retry(self, path: str, request_data: Any, timeout: float) -> Dict[str, Any]:
        """
        Send a request with retry logic.

        Connection failures and server errors are retried; client errors are
        raised immediately.

        Raises:
            RPCError: If all retry attempts fail
        """
        url = self.base_url + path
        last_exception = None

        for attempt in range(self.max_retries + 1):
            try:
                if attempt > 0:
                    self.stats["retry_attempts"] += 1
                    self.logger.debug(f"Retry attempt {attempt} for {url}")
                    time.sleep(self.retry_delay * attempt)

                response_data = self._send_http_request(url, request_data, timeout)

                self.stats["requests_sent"] += 1
                if isinstance(response_data, dict) and "error" in response_data:
                    self.stats["failed_requests"] += 1
                else:
                    self.stats["successful_requests"] += 1
                return response_data

            except urllib.error.HTTPError as e:
                if e.code >= 500:  # Server errors are retryable
                    last_exception = RPCError(f"Server error (HTTP {e.code}): {e.reason}")
                    self.logger.debug(f"Server error on attempt {attempt + 1}: {e}")
                else:  # Client errors are not retryable
                    self.stats["requests_sent"] += 1
                    self.stats["failed_requests"] += 1
                    if e.code == 404:
                        raise EndpointNotFoundError(path)
                    raise RPCError(f"Client error (HTTP {e.code}): {e.reason}")

            except urllib.error.URLError as e:
                if isinstance(e.reason, (TimeoutError, socket.timeout)):
                    last_exception = RPCTimeoutError(f"Request to {url} timed out")
                else:
                    last_exception = RPCConnectionError(f"Connection failed: {e.reason}", url)
                self.logger.debug(f"Connection attempt {attempt + 1} failed: {e}")

            except (TimeoutError, socket.timeout):
                last_exception = RPCTimeoutError(f"Request to {url} timed out")
                self.logger.debug(f"Request attempt {attempt + 1} timed out")

        # All retries failed
        self.stats["requests_sent"] += 1
        self.stats["failed_requests"] += 1

        if last_exception:
            raise last_exception
        raise RPCError("All retry attempts failed")

    def _send_http_request(self, url: str, data: Any, timeout: float) -> Dict[str, Any]:
        """
        Send one POST request.

        Raises:
            Various urllib exceptions
            RPCError: If the response is not valid JSON
        """
        start_time = time.time()

        request_body = json.dumps(data).encode('utf-8')
        headers = {
            'Content-Type': 'application/json',
            'Content-Length': str(len(request_body))
        }
        req = urllib.request.Request(url, data=request_body, headers=headers, method="POST")

        try:
            with urllib.request.urlopen(req, timeout=timeout) as response:
                response_body = response.read().decode('utf-8')
            return json.loads(response_body)

        except json.JSONDecodeError as e:
            raise RPCError(f"Invalid JSON response: {str(e)}")

        finally:
            self.stats["total_response_time"] += time.time() - start_time

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics."""
        stats = self.stats.copy()

        if stats["requests_sent"] > 0:
            stats["average_response_time"] = stats["total_response_time"] / stats["requests_sent"]
            stats["success_rate"] = stats["successful_requests"] / stats["requests_sent"]
        else:
            stats["average_response_time"] = 0.0
            stats["success_rate"] = 0.0

        return stats

    def reset_stats(self):
        """Reset client statistics."""
        self.stats = {
            "requests_sent": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "total_response_time": 0.0,
            "retry_attempts": 0
        }
