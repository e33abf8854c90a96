"""
Wraps computed cell values as immediate or asynchronously settling results.
"""
import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Optional, Union

from resheet.resheet_datatypes import Pending


class Cancellation:
    """Cancellation flag shared by every state of one asynchronous result."""
    __slots__ = ("cancelled", "_future")

    def __init__(self, future: Optional[asyncio.Future] = None):
        self.cancelled = False
        # Only set for tasks this result created itself
        self._future = future

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        if self._future is not None and not self._future.done():
            self._future.cancel()


@dataclass(frozen=True)
class ImmediateResult:
    value: Any = None
    type: Literal['immediate'] = 'immediate'

    def cancel(self):
        pass


@dataclass(frozen=True)
class AsyncResult:
    state: Literal['pending', 'failed', 'finished'] = 'pending'
    value: Any = None
    error: Any = None
    cancellation: Cancellation = field(default_factory=Cancellation, compare=False, repr=False)
    type: Literal['async'] = 'async'

    def cancel(self):
        """Idempotent; once called, settlement of this result is ignored."""
        self.cancellation.cancel()

    @property
    def cancelled(self) -> bool:
        return self.cancellation.cancelled


Result = Union[ImmediateResult, AsyncResult]

ResultCallback = Callable[[Result], None]


def is_awaitable(value: Any) -> bool:
    return inspect.isawaitable(value)


def get_result_value(result: Result) -> Any:
    match result:
        case ImmediateResult(value=value):
            return value
        case AsyncResult(state='pending'):
            return Pending
        case AsyncResult(state='failed', error=error):
            return error
        case AsyncResult(state='finished', value=value):
            return value
    raise TypeError(f"Not a result: {result!r}")


def async_result(awaitable: Any, on_update: ResultCallback,
                 loop: Optional[asyncio.AbstractEventLoop] = None) -> AsyncResult:
    """Schedules `awaitable` and reports its outcome to `on_update` exactly once."""
    try:
        loop = loop or asyncio.get_running_loop()
    except RuntimeError as e:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        return AsyncResult('failed', error=e)

    owned = not asyncio.isfuture(awaitable)
    future = asyncio.ensure_future(awaitable, loop=loop)
    cancellation = Cancellation(future if owned else None)

    def settle(fut: asyncio.Future):
        if cancellation.cancelled:
            return
        if fut.cancelled():
            on_update(AsyncResult('failed', error=asyncio.CancelledError(), cancellation=cancellation))
            return
        error = fut.exception()
        if error is not None:
            on_update(AsyncResult('failed', error=error, cancellation=cancellation))
        else:
            on_update(AsyncResult('finished', value=fut.result(), cancellation=cancellation))

    future.add_done_callback(settle)
    return AsyncResult('pending', cancellation=cancellation)


def result_from(value: Any, on_update: ResultCallback,
                loop: Optional[asyncio.AbstractEventLoop] = None) -> Result:
    """Immediate for plain values, pending AsyncResult for awaitables."""
    if is_awaitable(value):
        return async_result(value, on_update, loop)
    return ImmediateResult(value)
