"""Capability ports for host-supplied systems.

The layer never probes arbitrary attributes on a wrapped instance. Each
capability is a small runtime-checkable protocol; a host system (or a thin shim
around it) satisfies whichever ones it supports, and absence of a capability is
tolerated.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


class CapabilityKind(str, Enum):
    """Kinds of system the layer knows how to wrap."""

    DEPARTMENT = "department"
    MEMORY = "memory"
    ORCHESTRATOR = "orchestrator"
    CHANNEL = "channel"


@runtime_checkable
class SupportsExecute(Protocol):
    def execute(self, task: Any, options: Dict[str, Any]) -> Any:
        ...


@runtime_checkable
class SupportsSelectSpecialist(Protocol):
    def select_specialist(self, task: Any, options: Dict[str, Any]) -> Any:
        ...


@runtime_checkable
class SupportsStoreRetrieve(Protocol):
    def store(self, key: str, value: Any, options: Dict[str, Any]) -> Any:
        ...

    def retrieve(self, key: str, options: Dict[str, Any]) -> Any:
        ...


@runtime_checkable
class SupportsGetSet(Protocol):
    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any) -> Any:
        ...


@runtime_checkable
class SupportsCanHandle(Protocol):
    def can_handle(self, task: Any) -> bool:
        ...


@runtime_checkable
class SupportsTaskTypes(Protocol):
    supported_types: List[str]


@runtime_checkable
class SupportsSend(Protocol):
    def send(self, message: Any, options: Dict[str, Any]) -> Any:
        ...


@runtime_checkable
class SupportsHealthCheck(Protocol):
    def is_healthy(self) -> Any:
        ...


@dataclass(frozen=True)
class WrappedCapability:
    """Tagged reference to a host system and the role it plays."""

    kind: CapabilityKind
    port: Any

    @property
    def is_null(self) -> bool:
        return self.port is None


def wrapped_health(instance: Any) -> bool:
    """Health of a wrapped instance as seen from outside.

    ``None`` is unhealthy. An instance exposing ``is_healthy()`` is trusted;
    a dict answer is read through its ``healthy`` key.
    """
    if instance is None:
        return False
    if not isinstance(instance, SupportsHealthCheck):
        return True
    report = instance.is_healthy()
    if isinstance(report, dict):
        return bool(report.get("healthy", True))
    return bool(report)


def task_type(task: Any) -> Optional[str]:
    """Type tag of a task given as a dict with a ``type`` key."""
    if isinstance(task, dict):
        return task.get("type")
    return None
