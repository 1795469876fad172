"""Records shared by the adapters, the unified bus and the context broker."""

import copy
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from unification.events import ListenerHandle


@dataclass
class WrappedSystemReference:
    """A host system registered with an adapter or the bus.

    The instance is opaque: only its published methods are ever called.
    """

    id: str
    instance: Any
    registered_at: datetime = field(default_factory=datetime.now)
    options: Dict[str, Any] = field(default_factory=dict)
    counters: Dict[str, int] = field(default_factory=dict)

    def bump(self, counter: str, amount: int = 1) -> None:
        self.counters[counter] = self.counters.get(counter, 0) + amount


@dataclass
class Subscription:
    """Exactly which listeners were attached to one system.

    ``handles`` is filled by ``enable()`` and emptied by ``disable()``.
    """

    system_id: str
    event_names: List[str]
    handles: Dict[str, ListenerHandle] = field(default_factory=dict)

    @property
    def attached(self) -> bool:
        return bool(self.handles)


@dataclass(frozen=True)
class Envelope:
    """Canonical, immutable record of one observed event."""

    source_system_id: str
    event_name: str
    payload: Any = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)

    @property
    def canonical_name(self) -> str:
        return f"unified:{self.source_system_id}:{self.event_name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source_system_id,
            "event": self.event_name,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


@dataclass
class EventMappingRule:
    """Translate ``source_system:source_event`` into ``target_system:target_event``."""

    source_system: str
    source_event: str
    target_system: str
    target_event: str
    transform: Optional[Callable[[Any], Any]] = None
    executions: int = 0

    @property
    def key(self) -> str:
        return f"{self.source_system}:{self.source_event}"

    def matches(self, envelope: Envelope) -> bool:
        return (
            envelope.source_system_id == self.source_system
            and envelope.event_name == self.source_event
        )


@dataclass
class PatternStats:
    """Aggregated statistics for one repeated (source, event) pair."""

    source: str
    event: str
    count: int = 0
    first_seen: float = 0.0
    last_seen: float = 0.0
    average_interval: float = 0.0

    def observe(self, timestamp: float) -> None:
        """Fold one occurrence into the running statistics.

        ``average_interval`` is the mean gap between consecutive occurrences,
        so it is updated with the number of gaps seen so far (``count - 1``
        after the increment).
        """
        if self.count == 0:
            self.count = 1
            self.first_seen = timestamp
            self.last_seen = timestamp
            return

        interval = timestamp - self.last_seen
        self.count += 1
        gaps = self.count - 1
        self.average_interval = (self.average_interval * (gaps - 1) + interval) / gaps
        self.last_seen = timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern": f"{self.source}:{self.event}",
            "source": self.source,
            "event": self.event,
            "count": self.count,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "average_interval": self.average_interval,
        }


@dataclass
class Channel:
    """Named channel owned by the communication adapter."""

    name: str
    created_at: float = field(default_factory=time.time)
    subscribers: Dict[str, Callable[[Any], Any]] = field(default_factory=dict)
    message_count: int = 0


@dataclass(frozen=True)
class Message:
    """One message queued by the communication adapter."""

    payload: Any
    channel: Optional[str] = None
    sender: Optional[str] = None
    recipient: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)


class ContextMetadata(BaseModel):
    access_count: int = 0
    modification_count: int = 0
    handoff_count: int = 0


class Context(BaseModel):
    """Agent/task-scoped data bag tracked by the context broker."""

    id: str
    agent_id: str
    task_id: str
    created_at: float = Field(default_factory=time.time)
    last_accessed_at: float = Field(default_factory=time.time)
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: ContextMetadata = Field(default_factory=ContextMetadata)
    chain: List[str] = Field(default_factory=list, description="Ancestor context ids, oldest first")

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def touch(self) -> None:
        self.last_accessed_at = time.time()


class Snapshot(BaseModel):
    """Point-in-time deep copy of a context's data and metadata."""

    timestamp: float = Field(default_factory=time.time)
    data: Dict[str, Any]
    metadata: ContextMetadata

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    @classmethod
    def of(cls, context: Context) -> "Snapshot":
        return cls(
            data=copy.deepcopy(context.data),
            metadata=context.metadata.model_copy(),
        )


class HandoffRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    from_agent: str
    to_agent: str
    task_id: str
    timestamp: float = Field(default_factory=time.time)
    source_context_id: str
    dest_context_id: str
    applied_rules: List[str] = Field(default_factory=list)
