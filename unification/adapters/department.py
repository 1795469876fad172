"""Department adapter: wraps one existing department."""

import time
from collections import OrderedDict
from typing import Any, Dict, Optional

from unification.adapters.base import BaseAdapter
from unification.config import AdapterSettings
from unification.events import maybe_await
from unification.logger import logger
from unification.ports import CapabilityKind, SupportsExecute, SupportsSelectSpecialist


class DepartmentAdapter(BaseAdapter):
    """Adds opt-in metrics and a local context store around a department."""

    kind = CapabilityKind.DEPARTMENT

    def __init__(
        self,
        department: Any = None,
        name: str = "department",
        settings: Optional[AdapterSettings] = None,
    ):
        super().__init__(name=name, settings=settings)
        self._contexts: "OrderedDict[str, Any]" = OrderedDict()
        self.connections: Dict[str, "DepartmentAdapter"] = {}
        if department is None:
            logger.warning(f"DepartmentAdapter '{name}' created without a department")
        else:
            self.register_initial(name, department)

    @property
    def default_events(self):
        return self.settings.department_events

    @property
    def wrapped(self) -> Any:
        return self.get_system(self.name)

    def _initial_metrics(self) -> Dict[str, Any]:
        return {
            "tasks_processed": 0,
            "specialists_selected": 0,
            "events_observed": 0,
            "errors": 0,
            "total_execution_time": 0.0,
            "average_execution_time": 0.0,
        }

    def _reset_state(self) -> None:
        self._contexts.clear()
        self.connections.clear()

    # -- passthrough --------------------------------------------------------

    async def execute(self, task: Any, options: Optional[Dict[str, Any]] = None) -> Any:
        """Run ``task`` on the wrapped department.

        Delegation happens whether or not the adapter is enabled; errors from
        the department propagate unchanged.
        """
        department = self.wrapped
        if not isinstance(department, SupportsExecute):
            logger.warning(f"Department '{self.name}' cannot execute tasks")
            return None

        started = time.perf_counter()
        result = await maybe_await(department.execute(task, options or {}))
        elapsed = time.perf_counter() - started

        self._record(lambda: self._record_execution(task, result, elapsed), "task execution")
        return result

    def _record_execution(self, task: Any, result: Any, elapsed: float) -> None:
        self.metrics["tasks_processed"] += 1
        self.metrics["total_execution_time"] += elapsed
        self.metrics["average_execution_time"] = (
            self.metrics["total_execution_time"] / self.metrics["tasks_processed"]
        )
        self.emit("unified:task:executed", {
            "department": self.name,
            "task": task,
            "result": result,
            "duration": elapsed,
        })

    async def select_specialist(self, task: Any, options: Optional[Dict[str, Any]] = None) -> Any:
        """Ask the wrapped department to pick a specialist for ``task``."""
        department = self.wrapped
        if not isinstance(department, SupportsSelectSpecialist):
            logger.warning(f"Department '{self.name}' cannot select specialists")
            return None

        specialist = await maybe_await(department.select_specialist(task, options or {}))
        self._record(lambda: self._record_selection(task, specialist), "specialist selection")
        return specialist

    def _record_selection(self, task: Any, specialist: Any) -> None:
        self.metrics["specialists_selected"] += 1
        self.emit("unified:specialist:selected", {
            "department": self.name,
            "task": task,
            "specialist": specialist,
        })

    # -- local context ------------------------------------------------------

    def store_context(self, key: str, value: Any) -> None:
        """Keep ``value`` in the adapter-local context store (bounded, FIFO)."""
        self._contexts.pop(key, None)
        self._contexts[key] = value
        while len(self._contexts) > self.settings.context_cache_size:
            self._contexts.popitem(last=False)

    def retrieve_context(self, key: str) -> Any:
        return self._contexts.get(key)

    # -- connections --------------------------------------------------------

    def connect_to(self, other: "DepartmentAdapter") -> bool:
        """Link this adapter to another department adapter."""
        if not isinstance(other, DepartmentAdapter) or other is self:
            logger.warning(f"Department '{self.name}' cannot connect to {other!r}")
            return False
        self.connections[other.name] = other
        logger.debug(f"Department '{self.name}' connected to '{other.name}'")
        return True

    def disconnect_from(self, name: str) -> bool:
        return self.connections.pop(name, None) is not None

    # -- queries ------------------------------------------------------------

    def get_unified_metrics(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "enabled": self.enabled,
            "metrics": dict(self.metrics),
            "connections": list(self.connections),
            "contexts": len(self._contexts),
        }

    def is_healthy(self) -> Dict[str, Any]:
        health = super().is_healthy()
        if self.wrapped is None:
            health["healthy"] = health["wrapped_healthy"] = False
        return health
