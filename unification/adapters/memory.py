"""Memory adapter: wraps an existing memory system."""

from collections import Counter, OrderedDict
from typing import Any, Dict, List, Optional

from unification.adapters.base import BaseAdapter
from unification.config import AdapterSettings
from unification.events import maybe_await
from unification.logger import logger
from unification.ports import CapabilityKind, SupportsGetSet, SupportsStoreRetrieve


class ScopedContext:
    """Agent/task-scoped view over the memory adapter.

    Keys are namespaced as ``scope:{agent_id}:{task_id}:{key}`` in the wrapped
    memory system.
    """

    def __init__(self, adapter: "MemoryAdapter", agent_id: str, task_id: str):
        self.adapter = adapter
        self.agent_id = agent_id
        self.task_id = task_id
        self.id = f"{agent_id}:{task_id}"
        self._keys: List[str] = []

    def _scoped(self, key: str) -> str:
        return f"scope:{self.id}:{key}"

    async def store(self, key: str, value: Any) -> Any:
        result = await self.adapter.store(self._scoped(key), value)
        if key not in self._keys:
            self._keys.append(key)
        return result

    async def retrieve(self, key: str) -> Any:
        return await self.adapter.retrieve(self._scoped(key))

    def keys(self) -> List[str]:
        return list(self._keys)


class MemoryAdapter(BaseAdapter):
    """Adds a read cache, access statistics and scoped contexts around memory."""

    kind = CapabilityKind.MEMORY

    def __init__(
        self,
        memory: Any = None,
        name: str = "memory",
        settings: Optional[AdapterSettings] = None,
    ):
        super().__init__(name=name, settings=settings)
        self.unified_cache: "OrderedDict[str, Any]" = OrderedDict()
        self._access_counts: Counter = Counter()
        self._scopes: Dict[str, ScopedContext] = {}
        if memory is None:
            logger.warning(f"MemoryAdapter '{name}' created without a memory system")
        else:
            self.register_initial(name, memory)

    @property
    def default_events(self):
        return self.settings.memory_events

    @property
    def wrapped(self) -> Any:
        return self.get_system(self.name)

    def _initial_metrics(self) -> Dict[str, Any]:
        return {
            "reads": 0,
            "writes": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "context_handoffs": 0,
            "events_observed": 0,
            "errors": 0,
        }

    def _reset_state(self) -> None:
        self.unified_cache.clear()
        self._access_counts.clear()
        self._scopes.clear()

    def _on_disable(self) -> None:
        self.unified_cache.clear()

    # -- passthrough --------------------------------------------------------

    async def store(self, key: str, value: Any, options: Optional[Dict[str, Any]] = None) -> Any:
        """Write through to the wrapped memory system."""
        memory = self.wrapped
        if isinstance(memory, SupportsStoreRetrieve):
            result = await maybe_await(memory.store(key, value, options or {}))
        elif isinstance(memory, SupportsGetSet):
            result = await maybe_await(memory.set(key, value))
        else:
            logger.warning(f"Memory '{self.name}' does not support writes")
            return None

        self._record(lambda: self._record_write(key, value), "memory write")
        return result

    async def retrieve(self, key: str, options: Optional[Dict[str, Any]] = None) -> Any:
        """Read ``key``; while enabled, repeated reads are served from the cache."""
        if self.enabled and key in self.unified_cache:
            self._record(lambda: self._record_cache_hit(key), "cache hit")
            return self.unified_cache[key]

        memory = self.wrapped
        if isinstance(memory, SupportsStoreRetrieve):
            value = await maybe_await(memory.retrieve(key, options or {}))
        elif isinstance(memory, SupportsGetSet):
            value = await maybe_await(memory.get(key))
        else:
            logger.warning(f"Memory '{self.name}' does not support reads")
            return None

        self._record(lambda: self._record_read(key, value), "memory read")
        return value

    def _record_write(self, key: str, value: Any) -> None:
        self.metrics["writes"] += 1
        self._cache_put(key, value)
        self.emit("unified:memory:stored", {"memory": self.name, "key": key})

    def _record_read(self, key: str, value: Any) -> None:
        self.metrics["reads"] += 1
        self.metrics["cache_misses"] += 1
        self._access_counts[key] += 1
        if value is not None:
            self._cache_put(key, value)
        self.emit("unified:memory:retrieved", {"memory": self.name, "key": key, "cached": False})

    def _record_cache_hit(self, key: str) -> None:
        self.metrics["cache_hits"] += 1
        self.emit("unified:memory:retrieved", {"memory": self.name, "key": key, "cached": True})

    def _cache_put(self, key: str, value: Any) -> None:
        self.unified_cache.pop(key, None)
        self.unified_cache[key] = value
        while len(self.unified_cache) > self.settings.cache_size:
            self.unified_cache.popitem(last=False)

    def clear_cache(self) -> int:
        """Drop cached values without touching the wrapped memory."""
        cleared = len(self.unified_cache)
        self.unified_cache.clear()
        return cleared

    # -- scoped contexts ----------------------------------------------------

    def create_scoped_context(self, agent_id: str, task_id: str) -> ScopedContext:
        scope_id = f"{agent_id}:{task_id}"
        if scope_id not in self._scopes:
            self._scopes[scope_id] = ScopedContext(self, agent_id, task_id)
        return self._scopes[scope_id]

    def get_scoped_context(self, agent_id: str, task_id: str) -> Optional[ScopedContext]:
        return self._scopes.get(f"{agent_id}:{task_id}")

    async def transfer_context(self, from_agent: str, to_agent: str, task_id: str) -> Optional[ScopedContext]:
        """Copy every key of ``from_agent``'s scope into ``to_agent``'s scope."""
        source = self.get_scoped_context(from_agent, task_id)
        if source is None:
            logger.warning(f"No scoped context {from_agent}:{task_id} to transfer")
            return None

        destination = self.create_scoped_context(to_agent, task_id)
        for key in source.keys():
            value = await source.retrieve(key)
            await destination.store(key, value)

        self._record(
            lambda: self._record_handoff(from_agent, to_agent, task_id, len(source.keys())),
            "context handoff",
        )
        return destination

    def _record_handoff(self, from_agent: str, to_agent: str, task_id: str, keys: int) -> None:
        self.metrics["context_handoffs"] += 1
        self.emit("unified:context:transferred", {
            "from": from_agent,
            "to": to_agent,
            "task_id": task_id,
            "keys": keys,
        })

    # -- queries ------------------------------------------------------------

    @property
    def cache_hit_rate(self) -> float:
        lookups = self.metrics["cache_hits"] + self.metrics["cache_misses"]
        if lookups == 0:
            return 0.0
        return self.metrics["cache_hits"] / lookups

    def get_access_patterns(self) -> Dict[str, Any]:
        return {
            "total_accesses": sum(self._access_counts.values()),
            "unique_keys": len(self._access_counts),
            "hot_keys": [
                {"key": key, "count": count}
                for key, count in self._access_counts.most_common(self.settings.hot_key_limit)
            ],
        }

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **super().get_metrics(),
            "cache_size": len(self.unified_cache),
            "cache_hit_rate": self.cache_hit_rate,
            "scoped_contexts": len(self._scopes),
        }

    def is_healthy(self) -> Dict[str, Any]:
        health = super().is_healthy()
        if self.wrapped is None:
            health["healthy"] = health["wrapped_healthy"] = False
        health["cache_size"] = len(self.unified_cache)
        return health
