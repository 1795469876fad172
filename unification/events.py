"""Observable contract and in-process event emitter.

Every component of the unification layer, and any host shim that wants to be
observed by it, talks through the narrow ``Observable`` contract:
``subscribe(event, handler) -> handle`` and ``unsubscribe(handle)``. The
``EventEmitter`` below is the reference implementation used by the adapters,
the unified bus and the context broker.
"""

import asyncio
import fnmatch
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from unification.logger import logger


@dataclass(frozen=True)
class ListenerHandle:
    """Opaque token returned by ``subscribe`` and accepted by ``unsubscribe``."""

    event: str
    token: int


@runtime_checkable
class Observable(Protocol):
    """Anything that lets the layer attach and detach listeners."""

    def subscribe(self, event: str, handler: Callable[[Any], Any]) -> Any:
        ...

    def unsubscribe(self, handle: Any) -> bool:
        ...


@runtime_checkable
class Emitting(Protocol):
    """Anything the layer can re-emit a translated event on."""

    def emit(self, event: str, payload: Any = None) -> Any:
        ...


class EventEmitter:
    """Synchronous fan-out emitter with wildcard patterns.

    Handlers receive the payload as their only argument. Coroutine handlers are
    scheduled on the running loop. A failing handler is logged and never stops
    delivery to the remaining handlers.
    """

    def __init__(self):
        self._listeners: Dict[str, Dict[int, Callable]] = {}
        self._next_token = 0

    def subscribe(self, event: str, handler: Callable[[Any], Any]) -> ListenerHandle:
        """Attach ``handler`` to ``event`` (``fnmatch`` patterns allowed)."""
        self._next_token += 1
        self._listeners.setdefault(event, {})[self._next_token] = handler
        return ListenerHandle(event=event, token=self._next_token)

    def unsubscribe(self, handle: ListenerHandle) -> bool:
        """Detach the listener identified by ``handle``."""
        handlers = self._listeners.get(handle.event)
        if not handlers or handle.token not in handlers:
            return False
        del handlers[handle.token]
        if not handlers:
            del self._listeners[handle.event]
        return True

    on = subscribe

    def emit(self, event: str, payload: Any = None) -> int:
        """Deliver ``payload`` to every listener matching ``event``.

        Returns:
            int: Number of handlers invoked without error
        """
        delivered = 0
        for handler in self._matching_handlers(event):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    self._schedule(result, event)
                delivered += 1
            except Exception as e:
                logger.error(f"Listener for '{event}' failed: {e}")
        return delivered

    def _matching_handlers(self, event: str) -> List[Callable]:
        matched = []
        for pattern, handlers in list(self._listeners.items()):
            if pattern == event or fnmatch.fnmatchcase(event, pattern):
                matched.extend(list(handlers.values()))
        return matched

    @staticmethod
    def _schedule(awaitable: Any, event: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, dropping async listener for '{event}'")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(awaitable)
        task.add_done_callback(lambda t: _log_task_failure(t, event))

    def listener_count(self, event: Optional[str] = None) -> int:
        """Number of listeners registered for ``event``, or in total."""
        if event is None:
            return sum(len(handlers) for handlers in self._listeners.values())
        return len(self._listeners.get(event, {}))

    def remove_all_listeners(self) -> None:
        self._listeners.clear()


def _log_task_failure(task: asyncio.Task, event: str) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Async listener for '{event}' failed: {error}")


async def maybe_await(value: Any) -> Any:
    """Await ``value`` if a wrapped system returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value
