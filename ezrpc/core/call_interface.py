"""
Call Interface for the RPC Dispatch Engine

This module defines the per-request call context handed to hooks, the error
value user code can raise, and the response envelopes written back to callers.
"""

import inspect
import json
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .function_tree import EndpointPath

FALLBACK_MESSAGE = (
    "There was a problem on the server. The usual error reporting system failed "
    "(this is the backup system). Please report whatever error details are "
    "available to the owner of the web service."
)


class CallError(Exception):
    """
    Exception user functions and hooks can raise to report a failure.

    Attributes:
        message: Human readable description sent to the caller
        detail: Optional JSON serializable data sent alongside the message
    """

    def __init__(self, message: str, detail: Any = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


@dataclass
class CallContext:
    """
    State of one in-flight call, shared by the hooks of that call.

    Attributes:
        endpoint: Path of the endpoint being called
        endpoint_function: The function bound to the endpoint
        request: Transport-level view of the incoming request
        response: Transport-level response the envelope is written to
        args: Value passed to the endpoint function
        metadata: Caller supplied context, only visible to hooks
        output: Value returned by the endpoint function
        error: Exception raised before the after-hooks ran, if any
        execution_time_ms: Time spent inside the endpoint function
    """
    endpoint: EndpointPath
    endpoint_function: Callable[[Any], Any]
    request: Any = None
    response: Any = None
    args: Any = None
    metadata: Any = None
    output: Any = None
    error: Optional[BaseException] = None
    execution_time_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None


async def resolve(function: Callable[..., Any], *args: Any) -> Any:
    """
    Call ``function`` and await its result when it is awaitable.

    Plain functions and coroutine functions are therefore handled the same way
    by every stage of a call.
    """
    result = function(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def format_stack(error: BaseException) -> str:
    """Format the traceback attached to ``error``."""
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def create_value_envelope(output: Any) -> Dict[str, Any]:
    """Create the envelope for a successful call."""
    return {"value": output}


def create_error_envelope(endpoint: EndpointPath, args: Any, error: BaseException) -> Dict[str, Any]:
    """
    Create the envelope describing a failed call.

    Args:
        endpoint: Path of the endpoint that failed
        args: Arguments the call was made with
        error: The captured exception

    Returns:
        Dictionary with a single ``error`` key
    """
    message = error.message if isinstance(error, CallError) else str(error)
    body = {
        "endpoint": endpoint.display_name,
        "arguments": args,
        "stack": format_stack(error),
        "message": message,
        "name": error.__class__.__name__,
    }
    detail = getattr(error, "detail", None)
    if detail is not None:
        body["detail"] = detail
    return {"error": body}


def create_fallback_envelope(endpoint: EndpointPath, args: Any) -> Dict[str, Any]:
    """Create the envelope sent when reporting the real outcome failed."""
    return {
        "error": {
            "endpoint": endpoint.display_name,
            "arguments": args,
            "stack": None,
            "message": FALLBACK_MESSAGE,
        }
    }


def encode_envelope(envelope: Dict[str, Any]) -> str:
    """
    Serialize an envelope to JSON.

    Raises:
        TypeError: If the envelope holds values JSON cannot represent
        ValueError: If the envelope contains circular references, NaN or Infinity
    """
    return json.dumps(envelope, allow_nan=False)
