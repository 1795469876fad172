"""Communication adapter: unified channels over existing communication systems."""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from unification.adapters.base import BaseAdapter
from unification.config import AdapterSettings
from unification.events import maybe_await
from unification.logger import logger
from unification.ports import CapabilityKind, SupportsSend, task_type
from unification.schema import Channel, Message


@dataclass
class Route:
    message_type: str
    targets: List[str]
    transform: Optional[Callable[[Any], Any]] = None


class CommunicationAdapter(BaseAdapter):
    """Channels, direct messages and routing layered over host messaging.

    Published messages land in a bounded FIFO queue; an interval-driven
    processor delivers them to channel subscribers while the adapter is
    enabled. When the queue is full the oldest pending message is dropped.
    """

    kind = CapabilityKind.CHANNEL

    def __init__(self, name: str = "communication", settings: Optional[AdapterSettings] = None):
        super().__init__(name=name, settings=settings)
        self.channels: Dict[str, Channel] = {}
        self.routes: Dict[str, Route] = {}
        self.message_queue: Deque[Message] = deque(maxlen=self.settings.message_queue_size)
        self.history: Deque[Message] = deque(maxlen=self.settings.message_history_size)
        self._processor: Optional[asyncio.Task] = None

    @property
    def default_events(self):
        return self.settings.communication_events

    def _initial_metrics(self) -> Dict[str, Any]:
        return {
            "messages_sent": 0,
            "messages_delivered": 0,
            "messages_dropped": 0,
            "messages_forwarded": 0,
            "messages_routed": 0,
            "broadcasts": 0,
            "direct_messages": 0,
            "channels_active": 0,
            "events_observed": 0,
            "errors": 0,
        }

    def _reset_state(self) -> None:
        self.channels.clear()
        self.routes.clear()
        self.message_queue.clear()
        self.history.clear()

    def register_system(self, name: str, system: Any) -> bool:
        return self.register(name, system)

    # -- processor ----------------------------------------------------------

    def _on_enable(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"{self.name}: no running loop yet, processor starts with the first queued message")
            return
        self._ensure_processor()

    def _ensure_processor(self) -> None:
        if not self.enabled or self.processor_running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._processor = loop.create_task(self._process_loop())

    def _on_disable(self) -> None:
        if self._processor is not None:
            if not self._processor.get_loop().is_closed():
                self._processor.cancel()
            self._processor = None

    @property
    def processor_running(self) -> bool:
        return (
            self._processor is not None
            and not self._processor.done()
            and not self._processor.get_loop().is_closed()
        )

    async def _process_loop(self) -> None:
        while self.enabled:
            try:
                await asyncio.sleep(self.settings.process_interval)
                while self.message_queue and self.enabled:
                    await self.process_next_message()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.metrics["errors"] += 1
                logger.error(f"{self.name}: message processor error: {e}")

    async def process_next_message(self) -> bool:
        """Deliver the oldest pending message. Returns False when the queue is empty."""
        if not self.message_queue:
            return False

        message = self.message_queue.popleft()
        for subscriber_id, handler in self._recipients(message):
            try:
                await maybe_await(handler(message.payload))
                self.metrics["messages_delivered"] += 1
            except Exception as e:
                self.metrics["errors"] += 1
                logger.error(f"{self.name}: subscriber '{subscriber_id}' failed on {message.id}: {e}")
        return True

    def _recipients(self, message: Message) -> List[tuple]:
        if message.recipient is not None:
            for channel in self.channels.values():
                if message.recipient in channel.subscribers:
                    return [(message.recipient, channel.subscribers[message.recipient])]
            return []
        channel = self.channels.get(message.channel)
        if channel is None:
            return []
        return list(channel.subscribers.items())

    def _enqueue(self, message: Message) -> None:
        if len(self.message_queue) == self.message_queue.maxlen:
            self.metrics["messages_dropped"] += 1
        self.message_queue.append(message)
        self.history.append(message)
        self._ensure_processor()

    def clear_queue(self) -> int:
        cleared = len(self.message_queue)
        self.message_queue.clear()
        return cleared

    # -- channels -----------------------------------------------------------

    def create_channel(self, name: str) -> Channel:
        if name in self.channels:
            return self.channels[name]

        channel = Channel(name=name)
        self.channels[name] = channel
        self._record(self._count_channels, "channel count")
        self._record(
            lambda: self.emit("unified:channel:created", {"channel": name}),
            "channel creation",
        )
        return channel

    def remove_channel(self, name: str) -> bool:
        if self.channels.pop(name, None) is None:
            return False
        self._record(self._count_channels, "channel count")
        return True

    def _count_channels(self) -> None:
        self.metrics["channels_active"] = len(self.channels)

    def subscribe_channel(self, channel: str, subscriber_id: str, handler: Callable[[Any], Any]) -> bool:
        if not callable(handler):
            logger.warning(f"{self.name}: handler for '{subscriber_id}' is not callable")
            return False
        self.create_channel(channel).subscribers[subscriber_id] = handler
        return True

    def unsubscribe_channel(self, channel: str, subscriber_id: str) -> bool:
        target = self.channels.get(channel)
        if target is None:
            return False
        return target.subscribers.pop(subscriber_id, None) is not None

    async def publish(self, channel: str, message: Any, sender: Optional[str] = None) -> bool:
        """Queue ``message`` for every subscriber of ``channel``."""
        if not self.enabled:
            logger.debug(f"{self.name}: disabled, not publishing to '{channel}'")
            return False

        target = self.create_channel(channel)
        envelope = Message(payload=message, channel=channel, sender=sender)
        self._enqueue(envelope)
        target.message_count += 1
        self.metrics["messages_sent"] += 1
        self.emit("unified:message:published", {"channel": channel, "message_id": envelope.id})
        return True

    async def broadcast(self, message: Any, options: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Publish ``message`` on every channel."""
        if not self.enabled:
            return []

        sender = (options or {}).get("sender")
        results = []
        for name in list(self.channels):
            results.append({"channel": name, "published": await self.publish(name, message, sender)})

        self.metrics["broadcasts"] += 1
        self.emit("unified:broadcast", {"channels": len(results), "sender": sender})
        return results

    async def send_direct(self, sender: str, recipient: str, message: Any) -> bool:
        """Queue ``message`` for the subscriber registered as ``recipient``."""
        if not self.enabled:
            return False

        self._enqueue(Message(payload=message, sender=sender, recipient=recipient))
        self.metrics["direct_messages"] += 1
        self.emit("unified:direct:sent", {"from": sender, "to": recipient})
        return True

    # -- passthrough and routing --------------------------------------------

    async def send(self, message: Any, options: Optional[Dict[str, Any]] = None, system: Optional[str] = None) -> Any:
        """Send through a wrapped system (the first registered one by default)."""
        ref = self._systems.get(system) if system else self._first_system()
        if ref is None or not isinstance(ref.instance, SupportsSend):
            logger.warning(f"{self.name}: no communication system can send {system or ''}".rstrip())
            return None

        result = await maybe_await(ref.instance.send(message, options or {}))
        self._record(lambda: self._record_forward(ref.id), "message forward")
        return result

    def _record_forward(self, system: str) -> None:
        self.metrics["messages_forwarded"] += 1
        self._systems[system].bump("sent")

    def add_route(
        self,
        message_type: str,
        targets: List[str],
        transform: Optional[Callable[[Any], Any]] = None,
    ) -> bool:
        if not message_type or not targets:
            logger.warning(f"{self.name}: route needs a message type and at least one target")
            return False
        if transform is not None and not callable(transform):
            logger.warning(f"{self.name}: route transform for '{message_type}' is not callable")
            return False
        self.routes[message_type] = Route(message_type, list(targets), transform)
        return True

    async def route_message(self, message: Any) -> List[Dict[str, Any]]:
        """Deliver ``message`` to the targets of the route matching its type."""
        route = self.routes.get(task_type(message))
        if route is None:
            return []

        payload = route.transform(message) if route.transform else message
        results = []
        for target in route.targets:
            if target not in self._systems:
                logger.warning(f"{self.name}: route target '{target}' is not registered")
                results.append({"target": target, "delivered": False})
                continue
            result = await self.send(payload, system=target)
            results.append({"target": target, "delivered": True, "result": result})

        self._record(lambda: self._record_route(route, results), "message routing")
        return results

    def _record_route(self, route: Route, results: List[Dict[str, Any]]) -> None:
        self.metrics["messages_routed"] += 1
        self.emit("unified:message:routed", {
            "type": route.message_type,
            "targets": [r["target"] for r in results if r["delivered"]],
        })

    # -- queries ------------------------------------------------------------

    def get_history(
        self,
        channel: Optional[str] = None,
        since: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        messages = [
            m for m in self.history
            if (channel is None or m.channel == channel)
            and (since is None or m.timestamp >= since)
        ]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return [
            {
                "id": m.id,
                "channel": m.channel,
                "sender": m.sender,
                "recipient": m.recipient,
                "payload": m.payload,
                "timestamp": m.timestamp,
            }
            for m in messages
        ]

    def recent_history(self, seconds: float) -> List[Dict[str, Any]]:
        return self.get_history(since=time.time() - seconds)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **super().get_metrics(),
            "queue_size": len(self.message_queue),
            "history_size": len(self.history),
            "routes": len(self.routes),
        }

    def is_healthy(self) -> Dict[str, Any]:
        health = super().is_healthy()
        health.update({
            "processor_running": self.processor_running,
            "queue_size": len(self.message_queue),
            "channels": len(self.channels),
        })
        return health
