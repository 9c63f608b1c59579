"""
Browser instrumentation protocol.

Any object with these async methods can drive turnwatch. `CDPBackend` is the
stock implementation; tests use small in-file stubs.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from ..clock import Clock, bounded
from ..exceptions import InstrumentationError


@runtime_checkable
class MutationSubscription(Protocol):
    async def unsubscribe(self) -> None: ...


@runtime_checkable
class BrowserBackend(Protocol):
    """
    Minimal browser instrumentation surface.

    `evaluate` returns the CDP `Runtime.evaluate` response shape:
    `{"result": {"value": ...}, "exceptionDetails": {...}?}`.
    """

    async def evaluate(
        self, expression: str, *, return_by_value: bool = True, await_promise: bool = False
    ) -> dict[str, Any]: ...

    async def query_dom(self, selector: str) -> int | None:
        """Resolve a CSS selector to a DOM node id, or None."""
        ...

    async def set_file_input_files(self, node_id: int, paths: list[str]) -> None: ...

    async def terminate_execution(self) -> None:
        """Best-effort abort of the script currently running in the page."""
        ...

    async def subscribe_mutations(
        self, callback: Callable[[], None], *, burst_ms: int = 100
    ) -> MutationSubscription:
        """Invoke `callback` once per coalesced burst of document mutations."""
        ...


async def evaluate_value(
    backend: BrowserBackend,
    expression: str,
    *,
    await_promise: bool = False,
    clock: Clock | None = None,
    timeout_ms: float | None = None,
    operation: str = "evaluate",
) -> Any:
    """
    Evaluate `expression` and return its by-value result.

    Transport errors, in-page exceptions and (when a clock is given) call
    overruns all surface as InstrumentationError.
    """
    call = backend.evaluate(expression, return_by_value=True, await_promise=await_promise)
    try:
        if clock is not None and timeout_ms is not None:
            response = await bounded(clock, call, timeout_ms, operation=operation)
        else:
            response = await call
    except InstrumentationError:
        raise
    except Exception as e:
        raise InstrumentationError(f"{operation} failed: {e}", operation=operation) from e

    if not isinstance(response, dict):
        raise InstrumentationError(
            f"{operation} returned {type(response).__name__}, expected a CDP response",
            operation=operation,
            details=response,
        )
    details = response.get("exceptionDetails")
    if details:
        raise InstrumentationError.from_exception_details(details, operation=operation)
    result = response.get("result") or {}
    return result.get("value")
