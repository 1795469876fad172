"""
Unification Layer
Owns the capability adapters, the unified bus and the context broker
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from unification.adapters import (
    CommunicationAdapter,
    DepartmentAdapter,
    MemoryAdapter,
    OrchestrationAdapter,
)
from unification.config import config
from unification.events import EventEmitter, Observable
from unification.integration import ContextBroker, UnifiedBus
from unification.logger import logger


COMPONENTS = (
    "departments",
    "memory",
    "orchestration",
    "communication",
    "unified_bus",
    "context_broker",
)

MEMORY_TIERS = {"short_term": "stm", "working_memory": "wm", "long_term": "ltm"}

# Last five minutes of channel traffic go into a unified context.
COMMUNICATION_WINDOW = 300.0


@dataclass
class HostFramework:
    """The pre-existing systems handed to ``UnificationLayer.initialize``.

    Every field is optional; only what is present gets wrapped.
    ``memory_tiers`` may hold ``short_term``, ``working_memory`` and
    ``long_term`` stores.
    """

    core: Any = None
    departments: Dict[str, Any] = field(default_factory=dict)
    memory_system: Any = None
    orchestration_hooks: Any = None
    communication_system: Any = None
    memory_tiers: Dict[str, Any] = field(default_factory=dict)


class UnificationLayer(EventEmitter):
    """Opt-in, fully reversible integration tier over a host framework.

    Everything starts disabled. Components are switched on one by one with
    ``enable_component`` or all at once with ``enable``; ``rollback`` returns
    the layer to the state it had before ``initialize``.
    """

    def __init__(self):
        super().__init__()
        self.host: Optional[HostFramework] = None
        self.enabled = False
        self.components: Dict[str, bool] = {name: False for name in COMPONENTS}
        self.departments: Dict[str, DepartmentAdapter] = {}
        self.memory: Optional[MemoryAdapter] = None
        self.orchestration: Optional[OrchestrationAdapter] = None
        self.communication: Optional[CommunicationAdapter] = None
        self.unified_bus: Optional[UnifiedBus] = None
        self.context_broker: Optional[ContextBroker] = None
        self.metrics: Dict[str, int] = self._initial_metrics()
        logger.info("Unification layer created (disabled)")

    @staticmethod
    def _initial_metrics() -> Dict[str, int]:
        return {
            "adapter_count": 0,
            "messages_unified": 0,
            "contexts_assembled": 0,
            "contexts_transferred": 0,
        }

    @property
    def initialized(self) -> bool:
        return self.host is not None

    # -- wiring -------------------------------------------------------------

    def initialize(self, host: HostFramework) -> bool:
        """Wrap the host's systems. Nothing is enabled."""
        if host is None:
            logger.warning("Cannot initialize unification layer without a host framework")
            return False
        if self.initialized:
            logger.warning("Unification layer already initialized, roll back first")
            return False

        self.host = host
        self._create_adapters()
        self._connect_bus()
        self._connect_broker()
        logger.info(
            f"Unification layer initialized: {self.metrics['adapter_count']} adapters, "
            f"{len(self.unified_bus.get_connected_systems())} bus connections (all disabled)"
        )
        return True

    def _create_adapters(self) -> None:
        host = self.host
        for name, department in host.departments.items():
            self.departments[name] = DepartmentAdapter(department, name)
            self.metrics["adapter_count"] += 1

        if host.memory_system is not None:
            self.memory = MemoryAdapter(host.memory_system)
            self.metrics["adapter_count"] += 1

        self.orchestration = OrchestrationAdapter()
        if host.orchestration_hooks is not None:
            self.orchestration.register_initial("hooks", host.orchestration_hooks, {"priority": 1})
        self.metrics["adapter_count"] += 1

        self.communication = CommunicationAdapter()
        if host.communication_system is not None:
            self.communication.register_initial("main", host.communication_system)
        self.metrics["adapter_count"] += 1

    def _connect_bus(self) -> None:
        host = self.host
        events = config.adapters
        self.unified_bus = UnifiedBus()

        if isinstance(host.core, Observable):
            self.unified_bus.connect_to_existing("framework", host.core, events.framework_events)
        for name, department in host.departments.items():
            if isinstance(department, Observable):
                self.unified_bus.connect_to_existing(f"dept:{name}", department, events.department_events)
        if isinstance(host.orchestration_hooks, Observable):
            self.unified_bus.connect_to_existing(
                "orchestration", host.orchestration_hooks, events.orchestration_events
            )
        if isinstance(host.memory_system, Observable):
            self.unified_bus.connect_to_existing("memory", host.memory_system, events.memory_events)

    def _connect_broker(self) -> None:
        host = self.host
        self.context_broker = ContextBroker()

        if host.memory_system is not None:
            self.context_broker.register_memory_system("main", host.memory_system, primary=True)
        for tier, short_name in MEMORY_TIERS.items():
            store = host.memory_tiers.get(tier)
            if store is not None:
                self.context_broker.register_memory_system(short_name, store)

    def _targets(self, name: str) -> List[Any]:
        if name == "departments":
            return list(self.departments.values())
        target = getattr(self, name)
        return [target] if target is not None else []

    # -- switching ----------------------------------------------------------

    def enable_component(self, name: str) -> bool:
        """Switch one component on. Unknown names are rejected."""
        if name not in self.components:
            logger.warning(f"Unknown component: {name}")
            return False
        if self.components[name]:
            return True

        self.components[name] = True
        for target in self._targets(name):
            target.enable()
        logger.info(f"Enabled component: {name}")
        self.emit("component:enabled", {"component": name})
        return True

    def disable_component(self, name: str) -> bool:
        """Switch one component off, detaching everything it attached."""
        if name not in self.components:
            logger.warning(f"Unknown component: {name}")
            return False
        if not self.components[name]:
            return True

        self.components[name] = False
        for target in self._targets(name):
            target.disable()
        logger.info(f"Disabled component: {name}")
        self.emit("component:disabled", {"component": name})
        return True

    def enable(self) -> None:
        if self.enabled:
            return
        self.enabled = True
        for name in COMPONENTS:
            self.enable_component(name)
        logger.info("Unification layer enabled")
        self.emit("unification:enabled", {"components": list(COMPONENTS)})

    def disable(self) -> None:
        if not self.enabled:
            return
        self.enabled = False
        for name in COMPONENTS:
            self.disable_component(name)
        logger.info("Unification layer disabled")
        self.emit("unification:disabled", {"components": list(COMPONENTS)})

    def is_component_enabled(self, name: str) -> bool:
        return self.components.get(name, False)

    @property
    def enabled_count(self) -> int:
        return sum(
            1
            for name in COMPONENTS
            for target in self._targets(name)
            if target.enabled
        )

    # -- unified operations -------------------------------------------------

    async def get_unified_context(self, task_id: str) -> Dict[str, Any]:
        """Assemble what the enabled components know about ``task_id``.

        Disabled components are skipped, never waited on.
        """
        context: Dict[str, Any] = {
            "task": task_id,
            "timestamp": time.time(),
            "departments": {},
            "memory": None,
            "orchestration": None,
            "communication": None,
        }

        if self.components["departments"]:
            for name, adapter in self.departments.items():
                if adapter.enabled:
                    context["departments"][name] = adapter.retrieve_context(task_id)

        if self.components["memory"] and self.memory is not None and self.memory.enabled:
            context["memory"] = await self.memory.retrieve(f"context:{task_id}")

        if self.components["orchestration"] and self.orchestration is not None and self.orchestration.enabled:
            context["orchestration"] = self.orchestration.get_metrics()

        if self.components["communication"] and self.communication is not None and self.communication.enabled:
            context["communication"] = self.communication.recent_history(COMMUNICATION_WINDOW)

        self.metrics["contexts_assembled"] += 1
        return context

    async def transfer_context(self, from_agent: str, to_agent: str, task_id: str) -> List[Dict[str, Any]]:
        """Hand a task's context to another agent through every enabled component."""
        transfers: List[Dict[str, Any]] = []

        if self.components["memory"] and self.memory is not None and self.memory.enabled:
            scope = await self.memory.transfer_context(from_agent, to_agent, task_id)
            transfers.append({"type": "memory", "success": scope is not None})

        if self.components["departments"]:
            for name, adapter in self.departments.items():
                if not adapter.enabled:
                    continue
                local = adapter.retrieve_context(task_id)
                if local is not None:
                    adapter.store_context(f"{to_agent}:{task_id}", local)
                    transfers.append({"type": "department", "name": name, "success": True})

        if self.components["context_broker"] and self.context_broker is not None and self.context_broker.enabled:
            destination = await self.context_broker.transfer_context(from_agent, to_agent, task_id)
            transfers.append({
                "type": "broker",
                "success": destination is not None,
                "context_id": destination.id if destination else None,
            })

        self.metrics["contexts_transferred"] += 1
        self.emit("context:transferred", {
            "from": from_agent,
            "to": to_agent,
            "task_id": task_id,
            "transfers": transfers,
        })
        return transfers

    async def send_unified_message(self, message: Any, options: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Broadcast ``message`` on every channel and notify enabled departments."""
        results: List[Dict[str, Any]] = []

        if self.components["communication"] and self.communication is not None and self.communication.enabled:
            sent = await self.communication.broadcast(message, options)
            results.append({"type": "broadcast", "sent": sent})

        if self.components["departments"]:
            for name, adapter in self.departments.items():
                if adapter.enabled:
                    adapter.emit("unified:message", message)
                    results.append({"type": "department", "name": name, "notified": True})

        self.metrics["messages_unified"] += 1
        return results

    # -- queries ------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        metrics: Dict[str, Any] = {
            "layer": {
                "enabled": self.enabled,
                "initialized": self.initialized,
                "components": dict(self.components),
                "enabled_count": self.enabled_count,
                **self.metrics,
            },
            "adapters": {},
        }

        if self.departments:
            metrics["adapters"]["departments"] = {
                name: adapter.get_unified_metrics() for name, adapter in self.departments.items()
            }
        for name in ("memory", "orchestration", "communication"):
            adapter = getattr(self, name)
            if adapter is not None:
                metrics["adapters"][name] = adapter.get_metrics()

        if self.unified_bus is not None:
            metrics["unified_bus"] = self.unified_bus.get_metrics()
        if self.context_broker is not None:
            metrics["context_broker"] = self.context_broker.get_metrics()
        return metrics

    def is_healthy(self) -> Dict[str, Any]:
        components: Dict[str, Dict[str, Any]] = {}
        for name, adapter in self.departments.items():
            components[f"department:{name}"] = adapter.is_healthy()
        for name in ("memory", "orchestration", "communication", "unified_bus", "context_broker"):
            target = getattr(self, name)
            if target is not None:
                components[name] = target.is_healthy()

        return {
            "overall": all(h.get("adapter_healthy", h.get("healthy")) for h in components.values()),
            "enabled": self.enabled,
            "components": components,
        }

    # -- teardown -----------------------------------------------------------

    def rollback(self) -> None:
        """Undo everything: disable, reset and forget every component."""
        logger.warning("Rolling back unification layer...")

        for adapter in self.departments.values():
            adapter.rollback()
        for name in ("memory", "orchestration", "communication", "unified_bus", "context_broker"):
            target = getattr(self, name)
            if target is not None:
                target.rollback()

        self.host = None
        self.enabled = False
        self.components = {name: False for name in COMPONENTS}
        self.departments = {}
        self.memory = None
        self.orchestration = None
        self.communication = None
        self.unified_bus = None
        self.context_broker = None
        self.metrics = self._initial_metrics()

        logger.info("Unification layer rolled back completely")
        self.emit("unification:rolledback", {})

    async def shutdown(self) -> None:
        """Stop background loops and disable every component."""
        if self.unified_bus is not None:
            await self.unified_bus.shutdown()
        if self.context_broker is not None:
            await self.context_broker.shutdown()
        for name in COMPONENTS:
            self.disable_component(name)
        self.enabled = False
        logger.info("Unification layer shut down")
