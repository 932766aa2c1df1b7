"""
Core module for the RPC dispatch engine

This module provides the function tree, the per-call interface and the call
pipeline that executes endpoint functions between hooks.
"""

from .function_tree import (
    FunctionTree,
    EndpointPath,
    InvalidEndpointNameError,
    enumerate_endpoints,
    walk_tree,
    describe,
    is_valid_endpoint_name,
    FUNCTION_MARKER,
    VALUE_MARKER
)

from .call_interface import (
    CallContext,
    CallError,
    FALLBACK_MESSAGE,
    create_value_envelope,
    create_error_envelope,
    create_fallback_envelope
)

from .call_pipeline import (
    CallPipeline,
    InvalidEnvelopeError,
    decode_call_envelope
)

from .tree_loader import (
    load_tree_from_file,
    TreeLoadError
)

__all__ = [
    'FunctionTree',
    'EndpointPath',
    'InvalidEndpointNameError',
    'enumerate_endpoints',
    'walk_tree',
    'describe',
    'is_valid_endpoint_name',
    'FUNCTION_MARKER',
    'VALUE_MARKER',
    'CallContext',
    'CallError',
    'FALLBACK_MESSAGE',
    'create_value_envelope',
    'create_error_envelope',
    'create_fallback_envelope',
    'CallPipeline',
    'InvalidEnvelopeError',
    'decode_call_envelope',
    'load_tree_from_file',
    'TreeLoadError'
]
