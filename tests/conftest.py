"""
Shared fixtures and stub host systems.

Provides:
- Stub departments, memory stores, orchestrators and communication systems
  built on EventEmitter so the layer can observe them
- A key/value store exposing get/set only
- Small-capacity settings for bus, broker and adapters
"""

from typing import Any, Dict, List, Optional

import pytest

from unification.config import AdapterSettings, BrokerSettings, BusSettings
from unification.events import EventEmitter
from unification.layer import HostFramework


# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as cross-component integration test"
    )
    config.addinivalue_line(
        "markers", "asyncio: mark test as async test"
    )


# ============================================================================
# Stub host systems
# ============================================================================

class StubSystem(EventEmitter):
    """Observable host system with no domain methods."""


class StubDepartment(EventEmitter):
    def __init__(self, result: Any = None):
        super().__init__()
        self.result = result if result is not None else {"done": True}
        self.calls: List[Any] = []

    async def execute(self, task, options):
        self.calls.append(task)
        return self.result

    async def select_specialist(self, task, options):
        return "specialist-a"


class FailingDepartment(EventEmitter):
    async def execute(self, task, options):
        raise RuntimeError("department exploded")


class StubMemory(EventEmitter):
    """Async store/retrieve memory that counts backend reads."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.data: Dict[str, Any] = dict(data or {})
        self.reads = 0

    async def store(self, key, value, options):
        self.data[key] = value
        return True

    async def retrieve(self, key, options):
        self.reads += 1
        return self.data.get(key)


class KeyValueMemory:
    """Synchronous get/set memory; not observable."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = dict(data or {})

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value


class StubOrchestrator(EventEmitter):
    def __init__(self, name: str, supported_types: Optional[List[str]] = None):
        super().__init__()
        self.name = name
        self.supported_types = list(supported_types or [])
        self.executed: List[Any] = []

    async def execute(self, task, options):
        self.executed.append(task)
        return {"orchestrator": self.name}


class StubChannelSystem(EventEmitter):
    def __init__(self):
        super().__init__()
        self.sent: List[Any] = []

    async def send(self, message, options):
        self.sent.append(message)
        return {"sent": True}


class UnhealthySystem:
    def is_healthy(self):
        return {"healthy": False}


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def department():
    return StubDepartment()


@pytest.fixture
def memory_system():
    return StubMemory()


@pytest.fixture
def adapter_settings():
    return AdapterSettings(cache_size=3, context_cache_size=3, message_queue_size=5, message_history_size=5)


@pytest.fixture
def bus_settings():
    return BusSettings(max_queue_size=10, max_history_size=20, dispatch_interval=0.01, dispatch_batch_size=100)


@pytest.fixture
def broker_settings():
    return BrokerSettings(snapshot_every=5, max_context_age=100.0, handoff_timeout=5.0, max_handoff_history=50)


@pytest.fixture
def host():
    return HostFramework(
        core=StubSystem(),
        departments={"design": StubDepartment(), "backend": StubDepartment({"done": "backend"})},
        memory_system=StubMemory({"context:t1": {"goal": "ship"}}),
        orchestration_hooks=StubOrchestrator("hooks", ["build"]),
        communication_system=StubChannelSystem(),
        memory_tiers={"short_term": KeyValueMemory(), "long_term": KeyValueMemory()},
    )
