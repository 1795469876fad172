"""Unified bus: listen-only aggregation of events from existing systems.

Connected systems are never modified. While the bus is enabled, one listener
per subscribed event is attached to every observable system; each observed
event becomes an immutable ``Envelope`` that is kept in a bounded history,
folded into pattern statistics and pushed onto a bounded FIFO queue. An
interval-driven dispatcher pops envelopes in receipt order, re-emits them on
the bus's own canonical stream and applies any matching translation rule.

Overflow keeps the most recent envelopes: the oldest pending one is dropped.
"""

import asyncio
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from unification.config import BusSettings, config
from unification.events import Emitting, EventEmitter, ListenerHandle, Observable
from unification.logger import logger
from unification.schema import (
    Envelope,
    EventMappingRule,
    PatternStats,
    Subscription,
    WrappedSystemReference,
)


class UnifiedBus(EventEmitter):
    """Aggregates, translates and inspects events from connected systems."""

    def __init__(self, settings: Optional[BusSettings] = None):
        super().__init__()
        self.settings = settings or config.bus
        self._enabled = False
        self._systems: Dict[str, WrappedSystemReference] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._mappings: List[EventMappingRule] = []
        self._queue: Deque[Envelope] = deque(maxlen=self.settings.max_queue_size)
        self._history: Deque[Envelope] = deque(maxlen=self.settings.max_history_size)
        self._patterns: Dict[str, PatternStats] = {}
        self._dispatcher: Optional[asyncio.Task] = None
        self.metrics: Dict[str, int] = self._initial_metrics()

    @staticmethod
    def _initial_metrics() -> Dict[str, int]:
        return {
            "events_received": 0,
            "events_processed": 0,
            "events_dropped": 0,
            "mappings_executed": 0,
            "errors": 0,
        }

    # -- lifecycle ----------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        """Attach listeners to every connected system and start dispatching."""
        if self._enabled:
            return
        self._enabled = True
        for system_id in self._systems:
            self._attach(system_id)
        self._start_dispatcher()
        logger.info(f"Unified bus enabled ({len(self._systems)} systems connected)")
        self.emit("bus:enabled", {"systems": list(self._systems)})

    def disable(self) -> None:
        """Detach every listener and stop scheduling dispatch ticks.

        Pending envelopes stay queued until the bus is enabled again.
        """
        if not self._enabled:
            return
        self._enabled = False
        for system_id in self._systems:
            self._detach(system_id)
        self._stop_dispatcher()
        logger.info("Unified bus disabled")
        self.emit("bus:disabled", {"pending": len(self._queue)})

    def rollback(self) -> None:
        """Disable and forget every connection, rule, envelope and statistic."""
        self.disable()
        self._systems.clear()
        self._subscriptions.clear()
        self._mappings.clear()
        self._queue.clear()
        self._history.clear()
        self._patterns.clear()
        self.metrics = self._initial_metrics()
        self.remove_all_listeners()
        logger.info("Unified bus rolled back")

    async def shutdown(self) -> None:
        """Disable and wait for the dispatcher to finish cancelling."""
        dispatcher = self._dispatcher
        self.disable()
        if dispatcher is not None:
            try:
                await dispatcher
            except asyncio.CancelledError:
                pass

    def _start_dispatcher(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Unified bus: no running loop yet, dispatcher starts with the first event inside one")
            return
        self._ensure_dispatcher()

    def _ensure_dispatcher(self) -> None:
        """Start the dispatch loop if enabled and a loop is running."""
        if not self._enabled or self.dispatcher_running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._dispatcher = loop.create_task(self._dispatch_loop())

    def _stop_dispatcher(self) -> None:
        if self._dispatcher is not None:
            if not self._dispatcher.get_loop().is_closed():
                self._dispatcher.cancel()
            self._dispatcher = None

    @property
    def dispatcher_running(self) -> bool:
        return (
            self._dispatcher is not None
            and not self._dispatcher.done()
            and not self._dispatcher.get_loop().is_closed()
        )

    async def _dispatch_loop(self) -> None:
        while self._enabled:
            try:
                await asyncio.sleep(self.settings.dispatch_interval)
                await self.process_queue()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.metrics["errors"] += 1
                logger.error(f"Unified bus dispatch error: {e}")

    # -- connections --------------------------------------------------------

    def connect_to_existing(self, system_id: str, handle: Any, event_names: List[str]) -> bool:
        """Listen to ``event_names`` on an existing system.

        Listeners are attached immediately when the bus is enabled and the
        system is observable; otherwise attachment waits for ``enable()``.
        """
        if handle is None:
            logger.warning(f"Unified bus: cannot connect '{system_id}', handle is None")
            return False

        if system_id in self._systems:
            logger.warning(f"Unified bus: system '{system_id}' already connected, overwriting")
            self._detach(system_id)

        self._systems[system_id] = WrappedSystemReference(id=system_id, instance=handle)
        self._subscriptions[system_id] = Subscription(system_id=system_id, event_names=list(event_names))

        if not isinstance(handle, Observable):
            logger.debug(f"Unified bus: '{system_id}' is not observable, only usable as a mapping target")
        elif self._enabled:
            self._attach(system_id)

        logger.debug(f"Unified bus: connected '{system_id}' for {list(event_names)}")
        return True

    def disconnect(self, system_id: str) -> bool:
        if system_id not in self._systems:
            return False
        self._detach(system_id)
        del self._systems[system_id]
        del self._subscriptions[system_id]
        return True

    def _attach(self, system_id: str) -> int:
        handle = self._systems[system_id].instance
        subscription = self._subscriptions[system_id]
        if subscription.attached or not isinstance(handle, Observable):
            return 0

        for event_name in subscription.event_names:
            subscription.handles[event_name] = handle.subscribe(
                event_name, self._make_listener(system_id, event_name)
            )
        return len(subscription.handles)

    def _detach(self, system_id: str) -> int:
        subscription = self._subscriptions.get(system_id)
        if subscription is None:
            return 0

        handle = self._systems[system_id].instance
        detached = 0
        for event_name, listener in list(subscription.handles.items()):
            try:
                if handle.unsubscribe(listener):
                    detached += 1
            except Exception as e:
                logger.error(f"Unified bus: failed to detach '{event_name}' from '{system_id}': {e}")
        subscription.handles.clear()
        return detached

    def _make_listener(self, system_id: str, event_name: str) -> Callable[[Any], None]:
        def listener(payload: Any = None) -> None:
            self.ingest(system_id, event_name, payload)

        return listener

    def attached_listener_count(self, system_id: Optional[str] = None) -> int:
        if system_id is not None:
            subscription = self._subscriptions.get(system_id)
            return len(subscription.handles) if subscription else 0
        return sum(len(s.handles) for s in self._subscriptions.values())

    def get_connected_systems(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": system_id,
                "events": list(self._subscriptions[system_id].event_names),
                "attached": self._subscriptions[system_id].attached,
                "registered_at": ref.registered_at.isoformat(),
                "events_received": ref.counters.get("events", 0),
            }
            for system_id, ref in self._systems.items()
        ]

    # -- ingestion ----------------------------------------------------------

    def ingest(self, system_id: str, event_name: str, payload: Any = None) -> Envelope:
        """Record one observed event and queue it for dispatch."""
        self.metrics["events_received"] += 1
        envelope = Envelope(source_system_id=system_id, event_name=event_name, payload=payload)

        self._history.append(envelope)
        try:
            self._update_pattern(envelope)
            ref = self._systems.get(system_id)
            if ref is not None:
                ref.bump("events")
        except Exception as e:
            self.metrics["errors"] += 1
            logger.error(f"Unified bus: pattern update failed for {system_id}:{event_name}: {e}")

        if len(self._queue) == self._queue.maxlen:
            self.metrics["events_dropped"] += 1
        self._queue.append(envelope)
        self._ensure_dispatcher()
        return envelope

    def _update_pattern(self, envelope: Envelope) -> None:
        key = f"{envelope.source_system_id}:{envelope.event_name}"
        stats = self._patterns.get(key)
        if stats is None:
            stats = PatternStats(source=envelope.source_system_id, event=envelope.event_name)
            self._patterns[key] = stats
        stats.observe(envelope.timestamp)

    # -- dispatch -----------------------------------------------------------

    async def process_queue(self) -> int:
        """Run one dispatch tick. Returns the number of envelopes dispatched."""
        dispatched = 0
        while self._queue and dispatched < self.settings.dispatch_batch_size:
            envelope = self._queue.popleft()
            self._dispatch(envelope)
            dispatched += 1
        return dispatched

    def _dispatch(self, envelope: Envelope) -> None:
        self.emit("unified:event", envelope)
        self.emit(envelope.canonical_name, envelope)
        for rule in self._mappings:
            if rule.matches(envelope):
                self._apply_mapping(rule, envelope)
        self.metrics["events_processed"] += 1

    def _apply_mapping(self, rule: EventMappingRule, envelope: Envelope) -> None:
        ref = self._systems.get(rule.target_system)
        if ref is None or not isinstance(ref.instance, Emitting):
            logger.warning(
                f"Unified bus: mapping target '{rule.target_system}' is not connected or cannot emit"
            )
            return

        try:
            payload = rule.transform(envelope.payload) if rule.transform else envelope.payload
            ref.instance.emit(rule.target_event, payload)
        except Exception as e:
            self.metrics["errors"] += 1
            logger.error(f"Unified bus: mapping {rule.key} -> {rule.target_system}:{rule.target_event} failed: {e}")
            return

        rule.executions += 1
        self.metrics["mappings_executed"] += 1
        self.emit("unified:mapping:executed", {
            "source": rule.key,
            "target": f"{rule.target_system}:{rule.target_event}",
            "envelope_id": envelope.id,
        })

    # -- translation --------------------------------------------------------

    def add_event_mapping(
        self,
        source_system: str,
        source_event: str,
        target_system: str,
        target_event: str,
        transform: Optional[Callable[[Any], Any]] = None,
    ) -> bool:
        if not all([source_system, source_event, target_system, target_event]):
            logger.warning("Unified bus: event mapping needs source and target system and event")
            return False
        if transform is not None and not callable(transform):
            logger.warning(f"Unified bus: transform for {source_system}:{source_event} is not callable")
            return False

        self._mappings.append(
            EventMappingRule(source_system, source_event, target_system, target_event, transform)
        )
        logger.debug(
            f"Unified bus: mapping {source_system}:{source_event} -> {target_system}:{target_event}"
        )
        return True

    def get_mappings(self) -> List[Dict[str, Any]]:
        return [
            {
                "source": rule.key,
                "target": f"{rule.target_system}:{rule.target_event}",
                "transform": rule.transform is not None,
                "executions": rule.executions,
            }
            for rule in self._mappings
        ]

    def on_unified(self, pattern: str, handler: Callable[[Envelope], Any]) -> ListenerHandle:
        """Subscribe to the canonical stream.

        ``pattern`` is ``"event"`` for every envelope, ``"{system}:{event}"``
        for one pair, or a full ``unified:...`` name; wildcards are allowed.
        """
        if not pattern.startswith("unified:"):
            pattern = f"unified:{pattern}"
        return self.subscribe(pattern, handler)

    # -- queries ------------------------------------------------------------

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def pending(self) -> List[Envelope]:
        return list(self._queue)

    def get_history(
        self,
        source: Optional[str] = None,
        event: Optional[str] = None,
        since: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Envelope]:
        entries = [
            e for e in self._history
            if (source is None or e.source_system_id == source)
            and (event is None or e.event_name == event)
            and (since is None or e.timestamp >= since)
        ]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def clear_history(self) -> int:
        cleared = len(self._history)
        self._history.clear()
        return cleared

    def get_patterns(self, min_count: int = 1) -> List[Dict[str, Any]]:
        patterns = [p for p in self._patterns.values() if p.count >= min_count]
        patterns.sort(key=lambda p: p.count, reverse=True)
        return [p.to_dict() for p in patterns]

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "enabled": self._enabled,
            **self.metrics,
            "queue_size": len(self._queue),
            "history_size": len(self._history),
            "connected_systems": len(self._systems),
            "attached_listeners": self.attached_listener_count(),
            "mappings": len(self._mappings),
            "patterns": len(self._patterns),
        }

    def is_healthy(self) -> Dict[str, Any]:
        """A disabled bus is healthy; an enabled one needs its dispatcher."""
        utilization = len(self._queue) / self.settings.max_queue_size if self.settings.max_queue_size else 0.0
        return {
            "healthy": not self._enabled or self.dispatcher_running,
            "enabled": self._enabled,
            "dispatcher_running": self.dispatcher_running,
            "queue_utilization": utilization,
            "connected_systems": len(self._systems),
        }
