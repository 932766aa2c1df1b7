"""
Call Pipeline for Remote Function Calls

This module runs one call end to end: decode the call envelope, run the
before-hooks, invoke the endpoint function, run the after-hooks and write
exactly one response envelope, whatever fails along the way.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from .call_interface import (
    CallContext, resolve, create_value_envelope, create_error_envelope,
    create_fallback_envelope
)
from .function_tree import EndpointPath

Hook = Callable[[CallContext], Any]


class InvalidEnvelopeError(ValueError):
    """Exception raised when a request body is not an ``[args, metadata]`` pair."""
    pass


def decode_call_envelope(body: Any) -> Tuple[Any, Any]:
    """
    Split a request body into ``(args, metadata)``.

    Short lists are padded: a missing ``args`` is None and missing or null
    ``metadata`` becomes an empty dict.

    Raises:
        InvalidEnvelopeError: If the body is not a list of at most two items
    """
    if not isinstance(body, (list, tuple)):
        raise InvalidEnvelopeError(
            f"Request body must be a [args, metadata] list, got {type(body).__name__}"
        )
    if len(body) > 2:
        raise InvalidEnvelopeError(
            f"Request body must be a [args, metadata] list, got {len(body)} items"
        )

    args = body[0] if len(body) > 0 else None
    metadata = body[1] if len(body) > 1 else None
    if metadata is None:
        metadata = {}
    return args, metadata


class CallPipeline:
    """
    Executes endpoint functions between ordered before- and after-hooks.

    Two layers of containment guarantee one response per call: failures of
    the hooks or the function are reported as an error envelope, and failures
    while reporting (after-hooks, serialization) produce a fixed fallback
    envelope and a log entry. Both layers also contain BaseException, so
    SystemExit or KeyboardInterrupt raised by user code never reach the event
    loop. Cancellation is re-raised once the response has been written.
    """

    def __init__(self,
                 before_each_call: Optional[Sequence[Hook]] = None,
                 after_each_call: Optional[Sequence[Hook]] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize the pipeline.

        Args:
            before_each_call: Hooks run, in order, before the endpoint function
            after_each_call: Hooks run, in order, after the endpoint function
            logger: Logger used for failures of the reporting path
        """
        self.before_each_call: Tuple[Hook, ...] = tuple(before_each_call or ())
        self.after_each_call: Tuple[Hook, ...] = tuple(after_each_call or ())
        self.logger = logger or logging.getLogger(__name__)

        # Statistics
        self.stats = {
            "calls_handled": 0,
            "calls_failed": 0,
            "fallback_responses": 0
        }

    async def handle(self,
                     endpoint: EndpointPath,
                     endpoint_function: Callable[[Any], Any],
                     request: Any,
                     response: Any) -> CallContext:
        """
        Run one call and send its response envelope.

        Args:
            endpoint: Path the call was routed to
            endpoint_function: Function bound to that path
            request: Request view exposing the parsed ``body``
            response: Response view exposing ``send(envelope)``

        Returns:
            The CallContext of the finished call
        """
        self.stats["calls_handled"] += 1
        context = CallContext(
            endpoint=endpoint,
            endpoint_function=endpoint_function,
            request=request,
            response=response
        )

        cancelled = None
        try:
            context.args, context.metadata = decode_call_envelope(request.body)

            for hook in self.before_each_call:
                await resolve(hook, context)

            start_time = time.time()
            try:
                context.output = await resolve(endpoint_function, context.args)
            finally:
                context.execution_time_ms = (time.time() - start_time) * 1000
        except BaseException as e:
            context.error = e
            self.stats["calls_failed"] += 1
            if isinstance(e, asyncio.CancelledError):
                cancelled = e

        try:
            for hook in self.after_each_call:
                await resolve(hook, context)

            if context.error is not None:
                self.logger.debug(f"Call to {endpoint.display_name} failed: {context.error}")
                response.send(create_error_envelope(endpoint, context.args, context.error))
            else:
                response.send(create_value_envelope(context.output))
        # backup reporting path
        except BaseException as e:
            if isinstance(e, asyncio.CancelledError):
                cancelled = e
            self.stats["fallback_responses"] += 1
            self.logger.exception(f"Error reporting failed for {endpoint.display_name}")
            self._send_fallback(context)

        if cancelled is not None:
            raise cancelled
        return context

    def _send_fallback(self, context: CallContext) -> None:
        """Send the fixed fallback envelope, dropping arguments JSON cannot encode."""
        if getattr(context.response, "sent", False):
            return
        try:
            context.response.send(create_fallback_envelope(context.endpoint, context.args))
        except (TypeError, ValueError):
            context.response.send(create_fallback_envelope(context.endpoint, None))

    def get_statistics(self) -> Dict[str, Any]:
        """Get call statistics."""
        stats = self.stats.copy()
        handled = stats["calls_handled"]
        stats["success_rate"] = (handled - stats["calls_failed"]) / handled if handled else 0.0
        return stats
