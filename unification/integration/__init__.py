"""
Integration services
Event aggregation across systems and agent/task context handoff
"""

from .broker import ContextBroker
from .bus import UnifiedBus

__all__ = ["ContextBroker", "UnifiedBus"]
