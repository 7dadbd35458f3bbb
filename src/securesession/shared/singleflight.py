"""
Single-flight execution: concurrent callers asking for the same work share one
execution and all observe its outcome.
"""

from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

import anyio
from anyio.abc import TaskGroup

T = TypeVar("T")


class SharedCall(Generic[T]):
    """One in-flight execution and its eventual outcome."""

    def __init__(self) -> None:
        self._done = anyio.Event()
        self._result: T | None = None
        self._error: BaseException | None = None
        self._settled = False

    @property
    def settled(self) -> bool:
        return self._settled

    @property
    def result(self) -> T | None:
        return self._result

    @property
    def error(self) -> BaseException | None:
        return self._error

    def _resolve(self, result: T) -> None:
        self._result = result
        self._settled = True

    def _reject(self, error: BaseException) -> None:
        self._error = error
        self._settled = True

    def _outcome(self) -> T:
        if self._error is not None:
            raise self._error
        if not self._settled:
            raise RuntimeError("Shared call ended without an outcome")
        return self._result  # type: ignore[return-value]

    async def wait(self) -> T:
        await self._done.wait()
        return self._outcome()


class SingleFlight(Generic[T]):
    """
    Collapses overlapping calls to :meth:`do` into a single execution.

    When bound to a task group the work runs in a task of that group and every
    caller, the one that started it included, only waits on the
    :class:`SharedCall`; a caller that goes away simply stops waiting. Unbound,
    the first caller runs the work itself, shielded from cancellation so the
    callers still waiting are not left without an outcome.

    The optional ``after`` hook of :meth:`do` runs once per execution, after the
    call is no longer current and before any caller is released. Work started
    from inside the hook is therefore a new execution, never a join of the one
    that is finishing.
    """

    def __init__(self, task_group: TaskGroup | None = None) -> None:
        self._task_group = task_group
        self._current: SharedCall[T] | None = None

    def bind(self, task_group: TaskGroup | None) -> None:
        self._task_group = task_group

    @property
    def in_flight(self) -> bool:
        return self._current is not None

    @property
    def current(self) -> SharedCall[T] | None:
        return self._current

    async def do(
        self,
        work: Callable[[], Awaitable[T]],
        after: Callable[[SharedCall[T]], Awaitable[None]] | None = None,
    ) -> T:
        call = self._current
        if call is None:
            call = SharedCall()
            self._current = call
            if self._task_group is not None:
                self._task_group.start_soon(self._execute, call, work, after)
            else:
                with anyio.CancelScope(shield=True):
                    await self._execute(call, work, after)

        return await call.wait()

    async def _execute(
        self,
        call: SharedCall[T],
        work: Callable[[], Awaitable[T]],
        after: Callable[[SharedCall[T]], Awaitable[None]] | None,
    ) -> None:
        try:
            try:
                call._resolve(await work())
            except Exception as exc:
                call._reject(exc)
            finally:
                if self._current is call:
                    self._current = None

            if after is not None:
                await after(call)
        finally:
            call._done.set()
