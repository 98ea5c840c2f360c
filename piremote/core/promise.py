"""Single-resolution promise on top of the asyncio event loop.

A Promise settles exactly once; later resolve/reject calls are ignored.
Continuations registered with and_then()/catch() run on the loop via
call_soon, in registration order, and each returns a new chained Promise.
Handlers may return a plain value, another Promise, or any awaitable; the
latter two are flattened into the chained Promise.

Inside a coroutine a Promise can simply be awaited::

    async def main(client):
        await client.connect()
        state = await client.get_state()

and spawn() turns a coroutine back into a Promise so callback-style and
await-style code compose freely.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Generator, Generic, TypeVar

from piremote.core.errors import PiRemoteError

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")


class PromiseState(Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class Promise(Generic[T]):
    """Tagged-state value container with ordered continuations.

    Must be created while an event loop is running; the Promise binds to
    that loop the same way asyncio.Future does.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._state = PromiseState.PENDING
        self._value: Any = None
        self._error: BaseException | None = None
        self._callbacks: list[tuple[Callable[[Any], None], Callable[[BaseException], None]]] = []
        # Strong reference for promises produced by spawn()
        self._task: asyncio.Task | None = None

    # -- Construction helpers ------------------------------------------------

    @classmethod
    def resolved(cls, value: T = None) -> Promise[T]:
        promise: Promise[T] = cls()
        promise.resolve(value)
        return promise

    @classmethod
    def rejected(cls, error: BaseException | str) -> Promise[Any]:
        promise: Promise[Any] = cls()
        promise.reject(error)
        return promise

    # -- State ---------------------------------------------------------------

    @property
    def state(self) -> PromiseState:
        return self._state

    def done(self) -> bool:
        return self._state is not PromiseState.PENDING

    def result(self) -> T:
        """Return the resolved value, or raise the rejection error."""
        if self._state is PromiseState.PENDING:
            raise PiRemoteError("Promise is still pending")
        if self._state is PromiseState.REJECTED:
            assert self._error is not None
            raise self._error
        return self._value

    def error(self) -> BaseException | None:
        return self._error

    # -- Settlement ----------------------------------------------------------

    def resolve(self, value: T = None) -> None:
        if self._state is not PromiseState.PENDING:
            return
        self._state = PromiseState.RESOLVED
        self._value = value
        self._flush()

    def reject(self, error: BaseException | str) -> None:
        if self._state is not PromiseState.PENDING:
            return
        if not isinstance(error, BaseException):
            error = PiRemoteError(str(error))
        self._state = PromiseState.REJECTED
        self._error = error
        self._flush()

    def _flush(self) -> None:
        callbacks, self._callbacks = self._callbacks, []
        for on_resolve, on_reject in callbacks:
            self._loop.call_soon(self._dispatch, on_resolve, on_reject)

    def _dispatch(
        self,
        on_resolve: Callable[[Any], None],
        on_reject: Callable[[BaseException], None],
    ) -> None:
        if self._state is PromiseState.RESOLVED:
            on_resolve(self._value)
        else:
            assert self._error is not None
            on_reject(self._error)

    def _subscribe(
        self,
        on_resolve: Callable[[Any], None],
        on_reject: Callable[[BaseException], None],
    ) -> None:
        if self._state is PromiseState.PENDING:
            self._callbacks.append((on_resolve, on_reject))
        else:
            self._loop.call_soon(self._dispatch, on_resolve, on_reject)

    # -- Chaining ------------------------------------------------------------

    def and_then(self, fn: Callable[[T], Any]) -> Promise[Any]:
        """Run *fn* with the resolved value; rejections pass through untouched."""
        chained: Promise[Any] = Promise(self._loop)
        self._subscribe(
            lambda value: chained._settle_with(fn, value),
            chained.reject,
        )
        return chained

    def catch(self, fn: Callable[[BaseException], Any]) -> Promise[Any]:
        """Run *fn* with the rejection error; resolved values pass through."""
        chained: Promise[Any] = Promise(self._loop)
        self._subscribe(
            chained.resolve,
            lambda error: chained._settle_with(fn, error),
        )
        return chained

    def _settle_with(self, fn: Callable[[Any], Any], arg: Any) -> None:
        try:
            outcome = fn(arg)
        except Exception as e:
            self.reject(e)
            return
        self._adopt(outcome)

    def _adopt(self, outcome: Any) -> None:
        if isinstance(outcome, Promise):
            outcome._subscribe(self.resolve, self.reject)
        elif inspect.isawaitable(outcome):
            spawn(outcome)._subscribe(self.resolve, self.reject)
        else:
            self.resolve(outcome)

    # -- Await support -------------------------------------------------------

    def __await__(self) -> Generator[Any, None, T]:
        if self._state is PromiseState.PENDING:
            waiter = self._loop.create_future()

            def _on_resolve(value: Any) -> None:
                if not waiter.done():
                    waiter.set_result(value)

            def _on_reject(error: BaseException) -> None:
                if not waiter.done():
                    waiter.set_exception(error)

            self._subscribe(_on_resolve, _on_reject)
            return (yield from waiter.__await__())
        return self.result()

    def __repr__(self) -> str:
        if self._state is PromiseState.RESOLVED:
            return f"<Promise resolved={self._value!r}>"
        if self._state is PromiseState.REJECTED:
            return f"<Promise rejected={self._error!r}>"
        return "<Promise pending>"


def spawn(body: Awaitable[U] | Callable[[], Awaitable[U]]) -> Promise[U]:
    """Run *body* as an independent task and return a Promise of its result.

    *body* may be a coroutine object or a zero-argument callable producing
    one, so ``spawn(lambda: work(x))`` and ``spawn(work(x))`` are equivalent.
    """
    if callable(body) and not inspect.isawaitable(body):
        body = body()

    promise: Promise[U] = Promise()
    task = asyncio.ensure_future(body)

    def _settle(t: asyncio.Future) -> None:
        if t.cancelled():
            promise.reject(asyncio.CancelledError())
            return
        exc = t.exception()
        if exc is not None:
            promise.reject(exc)
        else:
            promise.resolve(t.result())

    task.add_done_callback(_settle)
    promise._task = task
    return promise
