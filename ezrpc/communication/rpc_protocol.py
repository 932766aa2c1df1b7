"""
RPC Protocol Definitions for Remote Function Calls

This module defines the wire-level routes, the request and response views the
HTTP handler passes to the call pipeline, and the exceptions raised by the
transport and the client.
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..core.call_interface import encode_envelope

INTERFACE_ROUTE = "/interface"

ALLOWED_METHODS = "POST, OPTIONS"
ALLOWED_HEADERS = "Content-Type"


class ResponseStatus(Enum):
    """Status of a request as seen by the transport."""
    SUCCESS = "success"
    ERROR = "error"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    INVALID_REQUEST = "invalid_request"
    TOO_LARGE = "too_large"


@dataclass
class CallRequest:
    """
    Transport-level view of an incoming call.

    Attributes:
        path: Request path, e.g. ``/call/math/add``
        body: Request body decoded from JSON
        headers: Request headers
        client_address: ``(host, port)`` of the caller
    """
    path: str
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    client_address: Optional[Tuple[str, int]] = None
    received_at: float = field(default_factory=time.time)


@dataclass
class CallResponse:
    """
    Transport-level response written once per request.

    Hooks may change ``status_code`` and ``headers`` before the envelope is
    sent; ``send`` serializes the envelope and may only succeed once.
    """
    status_code: int = 200
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.body is not None

    def send(self, envelope: Dict[str, Any]) -> None:
        """
        Serialize and store the response envelope.

        Raises:
            RuntimeError: If a response was already sent
            TypeError: If the envelope cannot be serialized to JSON
        """
        if self.sent:
            raise RuntimeError("A response has already been sent for this request")
        self.body = encode_envelope(envelope)


def create_status_body(status_code: int, message: str) -> Dict[str, Any]:
    """Create the JSON body of a transport-level error."""
    return {
        "error": message,
        "status_code": status_code,
        "timestamp": time.time()
    }


class RPCError(Exception):
    """Base exception for RPC operations."""

    def __init__(self, message: str, status: ResponseStatus = ResponseStatus.ERROR):
        super().__init__(message)
        self.status = status


class RPCTimeoutError(RPCError):
    """Exception raised when RPC requests time out."""

    def __init__(self, message: str = "RPC request timed out"):
        super().__init__(message, ResponseStatus.TIMEOUT)


class RPCConnectionError(RPCError):
    """Exception raised when the connection to the server fails."""

    def __init__(self, message: str = "Failed to connect to server", url: Optional[str] = None):
        super().__init__(message, ResponseStatus.ERROR)
        self.url = url


class EndpointNotFoundError(RPCError):
    """Exception raised when a route does not exist on the server."""

    def __init__(self, path: str):
        super().__init__(f"Endpoint '{path}' not found", ResponseStatus.NOT_FOUND)
        self.path = path


class InvalidRequestError(RPCError):
    """Exception raised when request framing, such as Content-Length, is malformed."""

    def __init__(self, message: str):
        super().__init__(message, ResponseStatus.INVALID_REQUEST)


class RequestTooLargeError(RPCError):
    """Exception raised when a request body exceeds the configured limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Request body of {size} bytes exceeds the limit of {limit} bytes",
            ResponseStatus.TOO_LARGE
        )
        self.size = size
        self.limit = limit


class RemoteCallError(RPCError):
    """
    Exception raised by the client when the server returns an error envelope.

    Attributes:
        endpoint: ``"math.add()"`` style name of the failed endpoint
        arguments: Arguments the call was made with
        stack: Server side traceback, None for fallback responses
        name: Exception class name on the server, if reported
        detail: Structured detail attached by the server, if any
    """

    def __init__(self, error: Dict[str, Any]):
        super().__init__(error.get("message") or "Remote call failed", ResponseStatus.ERROR)
        self.error = error
        self.endpoint = error.get("endpoint")
        self.arguments = error.get("arguments")
        self.stack = error.get("stack")
        self.name = error.get("name")
        self.detail = error.get("detail")


def decode_json_body(raw_body: bytes) -> Any:
    """
    Decode a request body, treating an empty body as None.

    Raises:
        ValueError: If the body is not valid UTF-8 encoded JSON
    """
    if not raw_body:
        return None
    return json.loads(raw_body.decode("utf-8"))
