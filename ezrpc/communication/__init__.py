"""
Communication Module

This module exposes function trees over HTTP and provides the matching
client, including protocol definitions, the HTTP server, and the client.
"""

from .rpc_protocol import (
    CallRequest,
    CallResponse,
    ResponseStatus,
    INTERFACE_ROUTE,
    RPCError,
    RPCTimeoutError,
    RPCConnectionError,
    EndpointNotFoundError,
    InvalidRequestError,
    RequestTooLargeError,
    RemoteCallError
)

from .rpc_server import (
    RPCServer,
    RPCRequestHandler,
    Route,
    build_route_table
)

from .rpc_client import (
    RPCClient,
    EndpointProxy
)

__all__ = [
    # Protocol classes
    "CallRequest",
    "CallResponse",
    "ResponseStatus",
    "INTERFACE_ROUTE",

    # Exception classes
    "RPCError",
    "RPCTimeoutError",
    "RPCConnectionError",
    "EndpointNotFoundError",
    "InvalidRequestError",
    "RequestTooLargeError",
    "RemoteCallError",

    # Server classes
    "RPCServer",
    "RPCRequestHandler",
    "Route",
    "build_route_table",

    # Client classes
    "RPCClient",
    "EndpointProxy"
]
