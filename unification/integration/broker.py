"""Context broker: agent/task-scoped contexts, handoffs and snapshots.

Contexts live in the broker. Registered memory systems are only ever read:
on a local miss the primary one is asked for ``context:{agent_id}:{task_id}``
and a hit is materialized as a preserved context. A handoff builds a new
destination context from a deep copy of the source's data, so a failure part
way through leaves the source untouched and the destination either absent or
complete.
"""

import asyncio
import copy
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from unification.config import BrokerSettings, config
from unification.events import EventEmitter, maybe_await
from unification.logger import logger
from unification.ports import SupportsGetSet, SupportsStoreRetrieve, wrapped_health
from unification.schema import Context, HandoffRecord, Snapshot


@dataclass
class Enricher:
    name: str
    enrich: Callable[[Context], Any]
    condition: Optional[Callable[[Context], bool]] = None
    applied: int = 0


@dataclass
class PendingHandoff:
    id: str
    from_agent: str
    to_agent: str
    task_id: str
    started_at: float


class ContextBroker(EventEmitter):
    """Creates, hands off, snapshots and sweeps contexts."""

    def __init__(self, settings: Optional[BrokerSettings] = None):
        super().__init__()
        self.settings = settings or config.broker
        self._enabled = False
        self._memory_systems: Dict[str, Any] = {}
        self._primary_memory: Optional[str] = None
        self._contexts: Dict[str, Context] = {}
        self._index: Dict[Tuple[str, str], str] = {}
        self._active: set = set()
        self._snapshots: Dict[str, Deque[Snapshot]] = {}
        self._enrichers: Dict[str, Enricher] = {}
        self._pending: Dict[str, PendingHandoff] = {}
        self._handoffs: Deque[HandoffRecord] = deque(maxlen=self.settings.max_handoff_history)
        self._monitor: Optional[asyncio.Task] = None
        self.metrics: Dict[str, int] = self._initial_metrics()

    @staticmethod
    def _initial_metrics() -> Dict[str, int]:
        return {
            "contexts_created": 0,
            "contexts_preserved": 0,
            "contexts_evicted": 0,
            "handoffs_completed": 0,
            "handoffs_failed": 0,
            "snapshots_taken": 0,
            "snapshots_restored": 0,
            "enrichments_applied": 0,
            "memory_reads": 0,
            "errors": 0,
        }

    # -- lifecycle ----------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        if self._enabled:
            return
        self._enabled = True
        self._start_monitoring()
        logger.info(f"Context broker enabled ({len(self._memory_systems)} memory systems)")
        self.emit("broker:enabled", {"memory_systems": list(self._memory_systems)})

    def disable(self) -> None:
        if not self._enabled:
            return
        self._enabled = False
        self._stop_monitoring()
        logger.info("Context broker disabled")
        self.emit("broker:disabled", {"contexts": len(self._contexts)})

    def rollback(self) -> None:
        """Disable and forget every context, memory system and enricher."""
        self.disable()
        self._memory_systems.clear()
        self._primary_memory = None
        self._contexts.clear()
        self._index.clear()
        self._active.clear()
        self._snapshots.clear()
        self._enrichers.clear()
        self._pending.clear()
        self._handoffs.clear()
        self.metrics = self._initial_metrics()
        self.remove_all_listeners()
        logger.info("Context broker rolled back")

    async def shutdown(self) -> None:
        monitor = self._monitor
        self.disable()
        if monitor is not None:
            try:
                await monitor
            except asyncio.CancelledError:
                pass

    def _start_monitoring(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Context broker: no running loop yet, sweeps start with the first context call inside one")
            return
        self._ensure_monitoring()

    def _ensure_monitoring(self) -> None:
        if not self._enabled or self.monitoring_active:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._monitor = loop.create_task(self._monitor_loop())

    def _stop_monitoring(self) -> None:
        if self._monitor is not None:
            if not self._monitor.get_loop().is_closed():
                self._monitor.cancel()
            self._monitor = None

    @property
    def monitoring_active(self) -> bool:
        return (
            self._monitor is not None
            and not self._monitor.done()
            and not self._monitor.get_loop().is_closed()
        )

    async def _monitor_loop(self) -> None:
        while self._enabled:
            try:
                await asyncio.sleep(self.settings.sweep_interval)
                self.cleanup_inactive_contexts()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.metrics["errors"] += 1
                logger.error(f"Context broker sweep failed: {e}")

    # -- memory systems -----------------------------------------------------

    def register_memory_system(self, name: str, handle: Any, primary: bool = False) -> bool:
        """Keep a read-only reference to a memory system.

        The first registration, or one marked ``primary``, becomes the default
        lookup target for context materialization.
        """
        if handle is None:
            logger.warning(f"Context broker: cannot register memory '{name}', handle is None")
            return False

        self._memory_systems[name] = handle
        if primary or self._primary_memory is None:
            self._primary_memory = name
        logger.debug(f"Context broker: registered memory '{name}'{' (primary)' if primary else ''}")
        return True

    @property
    def primary_memory(self) -> Optional[str]:
        return self._primary_memory

    async def read_from_memory(self, name: str, key: str) -> Any:
        """Read ``key`` from the named memory system. Errors propagate."""
        handle = self._memory_systems.get(name)
        if handle is None:
            logger.warning(f"Context broker: memory '{name}' is not registered")
            return None

        if isinstance(handle, SupportsStoreRetrieve):
            value = await maybe_await(handle.retrieve(key, {}))
        elif isinstance(handle, SupportsGetSet):
            value = await maybe_await(handle.get(key))
        else:
            logger.warning(f"Context broker: memory '{name}' cannot be read")
            return None

        self.metrics["memory_reads"] += 1
        return value

    def get_memory_status(self, name: str) -> Optional[Dict[str, Any]]:
        handle = self._memory_systems.get(name)
        if handle is None:
            return None
        try:
            healthy = wrapped_health(handle)
        except Exception as e:
            logger.error(f"Context broker: health query on memory '{name}' failed: {e}")
            healthy = False
        return {
            "name": name,
            "primary": name == self._primary_memory,
            "healthy": healthy,
            "readable": isinstance(handle, (SupportsStoreRetrieve, SupportsGetSet)),
        }

    # -- contexts -----------------------------------------------------------

    async def create_context(
        self, agent_id: str, task_id: str, initial_data: Optional[Dict[str, Any]] = None
    ) -> Optional[Context]:
        if not self._enabled:
            logger.debug(f"Context broker disabled, not creating context {agent_id}:{task_id}")
            return None
        self._ensure_monitoring()

        context = Context(
            id=f"{agent_id}:{task_id}:{time.time_ns()}",
            agent_id=agent_id,
            task_id=task_id,
            data=dict(initial_data or {}),
        )
        self._store(context)
        self.metrics["contexts_created"] += 1
        self.emit("context:created", {"context_id": context.id, "agent_id": agent_id, "task_id": task_id})
        return context

    def _store(self, context: Context) -> None:
        self._contexts[context.id] = context
        self._index[(context.agent_id, context.task_id)] = context.id
        self._active.add(context.id)
        self.take_snapshot(context.id)

    async def get_context(self, agent_id: str, task_id: str) -> Optional[Context]:
        """Return the context for (agent, task), materializing or creating it."""
        if not self._enabled:
            return None
        self._ensure_monitoring()

        context_id = self._index.get((agent_id, task_id))
        if context_id is not None and context_id in self._contexts:
            context = self._contexts[context_id]
            context.metadata.access_count += 1
            context.touch()
            return context

        preserved = await self._load_from_memory(agent_id, task_id)
        if preserved is not None:
            return preserved
        return await self.create_context(agent_id, task_id)

    async def _load_from_memory(self, agent_id: str, task_id: str) -> Optional[Context]:
        if self._primary_memory is None:
            return None

        key = f"context:{agent_id}:{task_id}"
        try:
            stored = await self.read_from_memory(self._primary_memory, key)
        except Exception as e:
            self.metrics["errors"] += 1
            logger.error(f"Context broker: reading '{key}' from '{self._primary_memory}' failed: {e}")
            return None
        if not isinstance(stored, dict):
            return None

        context = Context(
            id=f"{agent_id}:{task_id}:{time.time_ns()}",
            agent_id=agent_id,
            task_id=task_id,
            data=copy.deepcopy(stored),
        )
        self._store(context)
        self.metrics["contexts_preserved"] += 1
        logger.debug(f"Context broker: materialized {context.id} from '{self._primary_memory}'")
        return context

    def get_context_by_id(self, context_id: str) -> Optional[Context]:
        return self._contexts.get(context_id)

    async def update_context(self, context_id: str, partial: Dict[str, Any]) -> Optional[Context]:
        """Shallow-merge ``partial`` into the context's data."""
        context = self._contexts.get(context_id)
        if context is None:
            logger.warning(f"Context broker: no context '{context_id}' to update")
            return None

        context.data.update(partial)
        context.metadata.modification_count += 1
        context.touch()
        if context.metadata.modification_count % self.settings.snapshot_every == 0:
            self.take_snapshot(context_id)

        self.emit("context:updated", {"context_id": context_id, "keys": list(partial)})
        return context

    def release_context(self, context_id: str) -> bool:
        """Clear the active mark so the sweep may evict the context once idle."""
        if context_id not in self._active:
            return False
        self._active.discard(context_id)
        return True

    def is_active(self, context_id: str) -> bool:
        return context_id in self._active

    # -- handoff ------------------------------------------------------------

    def add_enricher(
        self,
        name: str,
        enrich: Callable[[Context], Any],
        condition: Optional[Callable[[Context], bool]] = None,
    ) -> bool:
        if not name or not callable(enrich):
            logger.warning(f"Context broker: rejected enricher {name!r}, enrich must be callable")
            return False
        if condition is not None and not callable(condition):
            logger.warning(f"Context broker: rejected enricher {name!r}, condition must be callable")
            return False
        self._enrichers[name] = Enricher(name, enrich, condition)
        return True

    def remove_enricher(self, name: str) -> bool:
        return self._enrichers.pop(name, None) is not None

    async def transfer_context(
        self,
        from_agent: str,
        to_agent: str,
        task_id: str,
        rules: Optional[List[Dict[str, Any]]] = None,
        enrich: bool = False,
    ) -> Optional[Context]:
        """Hand the (from_agent, task_id) context over to ``to_agent``.

        Rules run in order: ``filter`` drops the keys in ``exclude``,
        ``retain`` keeps only the keys in ``include`` and ``transform`` maps the
        data through ``fn``. With ``enrich`` set, registered enrichers add
        ``enriched_{name}`` entries. Returns None when there is no source or
        the sweep timed the handoff out before it committed.
        """
        pending = PendingHandoff(
            id=str(uuid.uuid4()),
            from_agent=from_agent,
            to_agent=to_agent,
            task_id=task_id,
            started_at=time.time(),
        )
        self._pending[pending.id] = pending

        try:
            source = await self.get_context(from_agent, task_id)
            if source is None:
                self.metrics["handoffs_failed"] += 1
                logger.warning(f"Context broker: no source context for {from_agent}:{task_id}")
                return None

            data, applied = self._apply_rules(copy.deepcopy(source.data), rules or [])
            destination = Context(
                id=f"{to_agent}:{task_id}:{time.time_ns()}",
                agent_id=to_agent,
                task_id=task_id,
                data=data,
                chain=source.chain + [source.id],
            )
            if enrich:
                self._enrich(destination)

            if pending.id not in self._pending:
                logger.warning(
                    f"Context broker: handoff {from_agent} -> {to_agent} for {task_id} "
                    "was dropped by the sweep, discarding destination"
                )
                return None

            self._store(destination)
            self.metrics["contexts_created"] += 1
            source.metadata.handoff_count += 1
            self._active.discard(source.id)
        except Exception:
            self.metrics["handoffs_failed"] += 1
            raise
        finally:
            self._pending.pop(pending.id, None)

        record = HandoffRecord(
            from_agent=from_agent,
            to_agent=to_agent,
            task_id=task_id,
            source_context_id=source.id,
            dest_context_id=destination.id,
            applied_rules=applied,
        )
        self._handoffs.append(record)
        self.metrics["handoffs_completed"] += 1
        logger.info(f"Context handoff {from_agent} -> {to_agent} for task {task_id}")
        self.emit("context:transferred", record.model_dump())
        return destination

    def _apply_rules(self, data: Dict[str, Any], rules: List[Dict[str, Any]]) -> Tuple[Dict[str, Any], List[str]]:
        applied = []
        for rule in rules:
            rule_type = rule.get("type") if isinstance(rule, dict) else None
            try:
                if rule_type == "filter":
                    excluded = set(rule.get("exclude", []))
                    data = {k: v for k, v in data.items() if k not in excluded}
                elif rule_type == "retain":
                    included = set(rule.get("include", []))
                    data = {k: v for k, v in data.items() if k in included}
                elif rule_type == "transform" and callable(rule.get("fn")):
                    transformed = rule["fn"](data)
                    if not isinstance(transformed, dict):
                        raise TypeError(f"transform returned {type(transformed).__name__}, expected dict")
                    if not all(isinstance(key, str) for key in transformed):
                        raise TypeError("transform returned a dict with non-string keys")
                    data = transformed
                else:
                    logger.warning(f"Context broker: ignoring invalid handoff rule {rule!r}")
                    continue
            except Exception as e:
                self.metrics["errors"] += 1
                logger.error(f"Context broker: handoff rule '{rule_type}' failed: {e}")
                continue
            applied.append(rule_type)
        return data, applied

    def _enrich(self, context: Context) -> None:
        for enricher in list(self._enrichers.values()):
            try:
                if enricher.condition is not None and not enricher.condition(context):
                    continue
                context.data[f"enriched_{enricher.name}"] = enricher.enrich(context)
                enricher.applied += 1
                self.metrics["enrichments_applied"] += 1
            except Exception as e:
                self.metrics["errors"] += 1
                logger.error(f"Context broker: enricher '{enricher.name}' failed: {e}")

    def get_handoff_history(self, agent_id: Optional[str] = None, limit: Optional[int] = None) -> List[HandoffRecord]:
        records = [
            r for r in self._handoffs
            if agent_id is None or agent_id in (r.from_agent, r.to_agent)
        ]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    @property
    def pending_handoffs(self) -> int:
        return len(self._pending)

    # -- snapshots ----------------------------------------------------------

    def take_snapshot(self, context_id: str) -> Optional[Snapshot]:
        context = self._contexts.get(context_id)
        if context is None:
            return None

        ring = self._snapshots.setdefault(context_id, deque(maxlen=self.settings.max_snapshots))
        snapshot = Snapshot.of(context)
        ring.append(snapshot)
        self.metrics["snapshots_taken"] += 1
        return snapshot

    def get_snapshots(self, context_id: str) -> List[Snapshot]:
        return list(self._snapshots.get(context_id, ()))

    def restore_snapshot(self, context_id: str, index: int = -1) -> bool:
        """Replace the live data with a copy of snapshot ``index`` (latest by default)."""
        context = self._contexts.get(context_id)
        ring = self._snapshots.get(context_id)
        if context is None or not ring:
            logger.warning(f"Context broker: no snapshot to restore for '{context_id}'")
            return False
        try:
            snapshot = ring[index]
        except IndexError:
            logger.warning(f"Context broker: snapshot index {index} out of range for '{context_id}'")
            return False

        context.data = copy.deepcopy(snapshot.data)
        context.touch()
        self.metrics["snapshots_restored"] += 1
        self.emit("context:restored", {"context_id": context_id, "timestamp": snapshot.timestamp})
        return True

    # -- chains and sweeping ------------------------------------------------

    def get_context_chain(self, context_id: str) -> List[Context]:
        """Ancestors of the context oldest first, ending with the context itself.

        Ancestors that were already evicted are skipped.
        """
        context = self._contexts.get(context_id)
        if context is None:
            return []
        ancestors = [self._contexts[cid] for cid in context.chain if cid in self._contexts]
        return ancestors + [context]

    def cleanup_inactive_contexts(self, now: Optional[float] = None) -> int:
        """Run one sweep. Returns the number of contexts evicted."""
        now = now if now is not None else time.time()

        stale = [
            cid for cid, ctx in self._contexts.items()
            if cid not in self._active and now - ctx.last_accessed_at > self.settings.max_context_age
        ]
        for cid in stale:
            context = self._contexts.pop(cid)
            self._snapshots.pop(cid, None)
            key = (context.agent_id, context.task_id)
            if self._index.get(key) == cid:
                del self._index[key]
        self.metrics["contexts_evicted"] += len(stale)

        expired = [
            pid for pid, pending in self._pending.items()
            if now - pending.started_at > self.settings.handoff_timeout
        ]
        for pid in expired:
            pending = self._pending.pop(pid)
            logger.warning(
                f"Context broker: handoff {pending.from_agent} -> {pending.to_agent} "
                f"for {pending.task_id} timed out"
            )
        self.metrics["handoffs_failed"] += len(expired)

        if stale or expired:
            logger.debug(f"Context broker sweep: evicted {len(stale)} contexts, dropped {len(expired)} handoffs")
        return len(stale)

    # -- queries ------------------------------------------------------------

    @property
    def context_count(self) -> int:
        return len(self._contexts)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "enabled": self._enabled,
            **self.metrics,
            "contexts": len(self._contexts),
            "active_contexts": len(self._active),
            "pending_handoffs": len(self._pending),
            "memory_systems": len(self._memory_systems),
            "enrichers": len(self._enrichers),
        }

    def is_healthy(self) -> Dict[str, Any]:
        context_health = len(self._contexts) <= self.settings.max_contexts
        return {
            "healthy": context_health,
            "enabled": self._enabled,
            "monitoring_active": self.monitoring_active,
            "primary_memory": self._primary_memory,
            "context_health": context_health,
        }
