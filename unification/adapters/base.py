"""Base class for capability adapters.

An adapter wraps one or more pre-existing host systems without modifying them.
While enabled it listens to the systems' events and records metrics; while
disabled it is a plain passthrough. ``enable()`` and ``disable()`` attach and
detach exactly the same listeners, and ``rollback()`` returns the adapter to
the state it had right after construction.
"""

from typing import Any, Callable, Dict, List, Optional

from unification.config import AdapterSettings, config
from unification.events import EventEmitter, Observable
from unification.logger import logger
from unification.ports import CapabilityKind, WrappedCapability, wrapped_health
from unification.schema import Subscription, WrappedSystemReference


class BaseAdapter(EventEmitter):
    """Common registration, listener and lifecycle handling for adapters."""

    kind: CapabilityKind = CapabilityKind.DEPARTMENT

    def __init__(self, name: str, settings: Optional[AdapterSettings] = None):
        super().__init__()
        self.name = name
        self.settings = settings or config.adapters
        self._enabled = False
        self._systems: Dict[str, WrappedSystemReference] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._initial_systems: Dict[str, tuple] = {}
        self.metrics: Dict[str, Any] = self._initial_metrics()

    # -- registration -------------------------------------------------------

    @property
    def default_events(self) -> List[str]:
        return []

    def register(self, name: str, system: Any, options: Optional[Dict[str, Any]] = None) -> bool:
        """Register a host system under ``name``.

        A ``None`` system is rejected with a warning. Re-registering a name
        replaces the previous system, detaching its listeners first.
        """
        if system is None:
            logger.warning(f"{self.name}: cannot register '{name}', system is None")
            return False

        options = dict(options or {})
        if name in self._systems:
            logger.warning(f"{self.name}: system '{name}' already registered, overwriting")
            self._detach(name)

        self._systems[name] = WrappedSystemReference(id=name, instance=system, options=options)
        self._subscriptions[name] = Subscription(
            system_id=name,
            event_names=list(options.get("events", self.default_events)),
        )

        if self._enabled:
            self._attach(name)

        logger.debug(f"{self.name}: registered {self.kind.value} system '{name}'")
        return True

    def unregister(self, name: str) -> bool:
        if name not in self._systems:
            return False
        self._detach(name)
        del self._systems[name]
        del self._subscriptions[name]
        logger.debug(f"{self.name}: unregistered system '{name}'")
        return True

    def register_initial(self, name: str, system: Any, options: Optional[Dict[str, Any]] = None) -> bool:
        """Register a system that survives ``rollback()``."""
        if system is None:
            return False
        self._initial_systems[name] = (system, dict(options or {}))
        return self.register(name, system, options)

    def capability(self, name: str) -> Optional[WrappedCapability]:
        ref = self._systems.get(name)
        if ref is None:
            return None
        return WrappedCapability(kind=self.kind, port=ref.instance)

    def get_system(self, name: str) -> Any:
        ref = self._systems.get(name)
        return ref.instance if ref else None

    @property
    def systems(self) -> Dict[str, WrappedSystemReference]:
        return dict(self._systems)

    def _first_system(self) -> Optional[WrappedSystemReference]:
        return next(iter(self._systems.values()), None)

    # -- lifecycle ----------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        """Attach listeners and start recording metrics. Idempotent."""
        if self._enabled:
            return
        self._enabled = True
        for name in self._systems:
            self._attach(name)
        self._on_enable()
        logger.info(f"{self.name} adapter enabled")
        self.emit("adapter:enabled", {"adapter": self.name, "kind": self.kind.value})

    def disable(self) -> None:
        """Detach every listener ``enable()`` attached. Idempotent."""
        if not self._enabled:
            return
        self._enabled = False
        for name in self._systems:
            self._detach(name)
        self._on_disable()
        logger.info(f"{self.name} adapter disabled")
        self.emit("adapter:disabled", {"adapter": self.name, "kind": self.kind.value})

    def rollback(self) -> None:
        """Disable and reset every piece of adapter-local state."""
        self.disable()
        for name in list(self._systems):
            self.unregister(name)
        self._reset_state()
        self.metrics = self._initial_metrics()
        for name, (system, options) in self._initial_systems.items():
            self.register(name, system, options)
        logger.info(f"{self.name} adapter rolled back")

    def _on_enable(self) -> None:
        pass

    def _on_disable(self) -> None:
        pass

    def _reset_state(self) -> None:
        pass

    def _initial_metrics(self) -> Dict[str, Any]:
        return {"events_observed": 0, "errors": 0}

    # -- listeners ----------------------------------------------------------

    def _attach(self, name: str) -> int:
        ref = self._systems[name]
        subscription = self._subscriptions[name]
        if subscription.attached or not isinstance(ref.instance, Observable):
            return 0

        for event_name in subscription.event_names:
            handler = self._make_listener(name, event_name)
            subscription.handles[event_name] = ref.instance.subscribe(event_name, handler)

        logger.debug(f"{self.name}: attached {len(subscription.handles)} listeners to '{name}'")
        return len(subscription.handles)

    def _detach(self, name: str) -> int:
        ref = self._systems.get(name)
        subscription = self._subscriptions.get(name)
        if ref is None or subscription is None:
            return 0

        detached = 0
        for event_name, handle in list(subscription.handles.items()):
            try:
                if ref.instance.unsubscribe(handle):
                    detached += 1
            except Exception as e:
                logger.error(f"{self.name}: failed to detach '{event_name}' from '{name}': {e}")
        subscription.handles.clear()
        return detached

    def _make_listener(self, system_name: str, event_name: str) -> Callable[[Any], None]:
        def listener(payload: Any = None) -> None:
            self._observe(system_name, event_name, payload)

        return listener

    def _observe(self, system_name: str, event_name: str, payload: Any) -> None:
        try:
            self.metrics["events_observed"] += 1
            self._systems[system_name].bump("events")
            self._on_wrapped_event(system_name, event_name, payload)
        except Exception as e:
            self.metrics["errors"] += 1
            logger.error(f"{self.name}: error observing '{event_name}' from '{system_name}': {e}")

    def _on_wrapped_event(self, system_name: str, event_name: str, payload: Any) -> None:
        self.emit(f"unified:{self.kind.value}:{event_name}", {"system": system_name, "payload": payload})

    def _record(self, action: Callable[[], None], description: str) -> None:
        """Run bookkeeping; failures are logged and never reach the caller."""
        if not self._enabled:
            return
        try:
            action()
        except Exception as e:
            self.metrics["errors"] = self.metrics.get("errors", 0) + 1
            logger.error(f"{self.name}: failed to record {description}: {e}")

    def attached_listener_count(self) -> int:
        return sum(len(s.handles) for s in self._subscriptions.values())

    # -- queries ------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        return {"enabled": self._enabled, **self.metrics}

    def is_healthy(self) -> Dict[str, Any]:
        wrapped = {}
        for name, ref in self._systems.items():
            try:
                wrapped[name] = wrapped_health(ref.instance)
            except Exception as e:
                logger.error(f"{self.name}: health query on '{name}' failed: {e}")
                wrapped[name] = False
        wrapped_healthy = all(wrapped.values())
        return {
            "healthy": wrapped_healthy,
            "adapter_healthy": True,
            "enabled": self._enabled,
            "wrapped_healthy": wrapped_healthy,
            "systems": wrapped,
        }
