"""
Capability adapters
Wrap existing departments, memory, orchestrators and communication systems
"""

from .base import BaseAdapter
from .communication import CommunicationAdapter
from .department import DepartmentAdapter
from .memory import MemoryAdapter, ScopedContext
from .orchestration import OrchestrationAdapter

__all__ = [
    "BaseAdapter",
    "CommunicationAdapter",
    "DepartmentAdapter",
    "MemoryAdapter",
    "OrchestrationAdapter",
    "ScopedContext",
]
