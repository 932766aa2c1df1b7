"""
ezrpc - expose a tree of Python functions as HTTP endpoints.

Example:
    from ezrpc import RPCServer

    def add(numbers):
        return sum(numbers)

    server = RPCServer(port=4321, interface={"math": {"add": add}})
    server.start()
"""

__version__ = "0.1.0"

from .core import (
    FunctionTree,
    EndpointPath,
    CallContext,
    CallError,
    CallPipeline,
    enumerate_endpoints,
    describe
)

from .communication import (
    RPCServer,
    RPCClient,
    RPCError,
    RemoteCallError
)

__all__ = [
    "FunctionTree",
    "EndpointPath",
    "CallContext",
    "CallError",
    "CallPipeline",
    "enumerate_endpoints",
    "describe",
    "RPCServer",
    "RPCClient",
    "RPCError",
    "RemoteCallError",
    "__version__"
]
