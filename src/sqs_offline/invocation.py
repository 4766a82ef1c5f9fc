"""
The bridge between a received batch and the user's handler code.

Handlers come in three shapes, detected once when a handler is registered:

* plain: ``def handler(event, context)``; the return value is the result.
* coroutine: ``async def handler(event, context)``; run to completion.
* callback: ``def handler(event, context, callback)``; the invocation completes
  when ``callback(error, result)`` is called.

Whatever the shape, ``HandlerInvoker.invoke`` returns an ``InvocationResult``
and never raises for handler failures.
"""

from __future__ import annotations

import asyncio
import importlib
import importlib.util
import inspect
import logging
import sys
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from aws_lambda_powertools.utilities.typing import LambdaContext

from .exceptions import HandlerLoadError, InvocationError
from .schemas import FunctionDefinition, SqsEvent

logger = logging.getLogger(__name__)

# How often a callback-style invocation re-checks the cancel signal.
_CALLBACK_POLL_SECONDS = 0.1


class CallingConvention(Enum):
    PLAIN = "plain"
    COROUTINE = "coroutine"
    CALLBACK = "callback"


@dataclass(frozen=True)
class InvocationResult:
    """Completion signal of one invocation."""

    succeeded: bool
    result: Any = None
    error: InvocationError | None = None
    cancelled: bool = False


class LocalLambdaContext(LambdaContext):
    """A LambdaContext for local invocations, one per invocation."""

    def __init__(
        self,
        function_name: str,
        *,
        timeout_seconds: int = 6,
        memory_size: int = 1024,
        region: str = "us-west-2",
        account_id: str = "000000000000",
    ):
        request_id = str(uuid.uuid4())
        self._function_name = function_name
        self._function_version = "$LATEST"
        self._invoked_function_arn = (
            f"arn:aws:lambda:{region}:{account_id}:function:{function_name}"
        )
        self._memory_limit_in_mb = memory_size
        self._aws_request_id = request_id
        self._log_group_name = f"/aws/lambda/{function_name}"
        self._log_stream_name = f"{time.strftime('%Y/%m/%d')}/[$LATEST]{request_id.replace('-', '')}"
        self._identity = None
        self._client_context = None
        self._deadline = time.monotonic() + timeout_seconds

    def get_remaining_time_in_millis(self) -> int:
        return max(0, int((self._deadline - time.monotonic()) * 1000))


def detect_calling_convention(handler: Callable[..., Any]) -> CallingConvention:
    """Picks the calling convention from the handler's declared parameters."""
    try:
        signature = inspect.signature(handler)
    except (TypeError, ValueError):
        return CallingConvention.PLAIN

    # Parameters with defaults never make a handler callback-style.
    positional = [
        param
        for param in signature.parameters.values()
        if param.kind
        in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
        and param.default is inspect.Parameter.empty
    ]
    if len(positional) >= 3:
        return CallingConvention.CALLBACK
    if inspect.iscoroutinefunction(handler):
        return CallingConvention.COROUTINE
    return CallingConvention.PLAIN


async def _await(awaitable: Awaitable[Any]) -> Any:
    return await awaitable


class HandlerInvoker:
    """A handler adapted, at registration time, to a single invoke contract."""

    def __init__(
        self,
        function_name: str,
        handler: Callable[..., Any],
        context_factory: Callable[[], LambdaContext] | None = None,
    ):
        self.function_name = function_name
        self._handler = handler
        self._context_factory = context_factory or (
            lambda: LocalLambdaContext(function_name)
        )
        self.convention = detect_calling_convention(handler)

    def invoke(
        self,
        event: SqsEvent,
        context: LambdaContext | None = None,
        cancel: threading.Event | None = None,
    ) -> InvocationResult:
        if context is None:
            context = self._context_factory()
        try:
            if self.convention is CallingConvention.CALLBACK:
                return self._invoke_with_callback(event, context, cancel)
            result = self._handler(event, context)
            if inspect.isawaitable(result):
                result = asyncio.run(_await(result))
        except Exception as e:
            return self._failure(e)
        return InvocationResult(succeeded=True, result=result)

    def _invoke_with_callback(
        self,
        event: SqsEvent,
        context: LambdaContext,
        cancel: threading.Event | None,
    ) -> InvocationResult:
        done = threading.Event()
        lock = threading.Lock()
        outcome: dict[str, Any] = {}

        def callback(error: Any = None, result: Any = None) -> None:
            with lock:
                # Only the first completion counts.
                if done.is_set():
                    return
                outcome["error"] = error
                outcome["result"] = result
                done.set()

        returned = self._handler(event, context, callback)
        if inspect.isawaitable(returned):
            asyncio.run(_await(returned))

        while not done.wait(_CALLBACK_POLL_SECONDS):
            if cancel is not None and cancel.is_set():
                return InvocationResult(succeeded=False, cancelled=True)

        if outcome["error"]:
            return self._failure(outcome["error"])
        return InvocationResult(succeeded=True, result=outcome["result"])

    def _failure(self, error: Any) -> InvocationResult:
        reason = str(error) or type(error).__name__
        failure = InvocationError(
            self.function_name,
            reason,
            context={"error_type": type(error).__name__},
        )
        if isinstance(error, BaseException):
            failure.__cause__ = error
        return InvocationResult(succeeded=False, error=failure)


def load_handler(
    function_name: str,
    definition: FunctionDefinition,
    service_path: str | Path,
) -> Callable[..., Any]:
    """
    Imports the callable named by a `path/to/module.function` handler string.
    The module is loaded from the file under *service_path* when it exists,
    otherwise it is imported as a dotted module name.
    """
    if not definition.handler:
        raise HandlerLoadError(function_name, "", "function declares no handler")

    module_path, _, attribute = definition.handler.rpartition(".")
    if not module_path or not attribute:
        raise HandlerLoadError(
            function_name, definition.handler, "expected 'module.function'"
        )

    root = Path(service_path).resolve()
    if str(root) not in sys.path:
        # Handlers import their sibling modules relative to the service root.
        sys.path.insert(0, str(root))

    source_file = root / f"{module_path}.py"
    try:
        if source_file.is_file():
            module_name = f"_sqs_offline_handler_{function_name}"
            spec = importlib.util.spec_from_file_location(module_name, source_file)
            if spec is None or spec.loader is None:
                raise ImportError(f"cannot load {source_file}")
            module = importlib.util.module_from_spec(spec)
            sys.modules[module_name] = module
            spec.loader.exec_module(module)
        else:
            module = importlib.import_module(module_path.replace("/", "."))
    except Exception as e:
        raise HandlerLoadError(function_name, definition.handler, str(e)) from e

    handler = getattr(module, attribute, None)
    if not callable(handler):
        raise HandlerLoadError(
            function_name,
            definition.handler,
            f"'{attribute}' is not a callable in {module_path}",
        )
    logger.debug(
        "Handler loaded",
        extra={"function_name": function_name, "handler": definition.handler},
    )
    return handler
