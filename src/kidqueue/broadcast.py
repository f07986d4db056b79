"""Room-scoped notification channel for queue changes.

Rooms are named ``school:<id>`` or ``parent:<id>``. The MQTT broadcaster
maps a room to the topic ``<prefix>/school/<id>``.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import paho.mqtt.client as mqtt
from pydantic import JsonValue
from typing_extensions import override

logger = logging.getLogger(__name__)

RoomHandler = Callable[[dict[str, Any]], None]


def school_room(school_id: str) -> str:
    return f"school:{school_id}"


def parent_room(parent_id: str) -> str:
    return f"parent:{parent_id}"


class Broadcaster(ABC):
    """Publish/subscribe channel used to fan out queue snapshots."""

    @abstractmethod
    def connect(self) -> bool: ...

    @abstractmethod
    def disconnect(self) -> None: ...

    @abstractmethod
    def publish(self, room: str, payload: dict[str, JsonValue]) -> bool:
        """Publish a JSON payload to every subscriber of a room."""

    @abstractmethod
    def subscribe(self, room: str, handler: RoomHandler) -> bool:
        """Register a handler for a room.

        Returns:
            False if this broadcaster cannot deliver pushes
        """

    @abstractmethod
    def unsubscribe(self, room: str, handler: RoomHandler) -> None: ...


class _HandlerRegistry:
    def __init__(self):
        self._lock: threading.Lock = threading.Lock()
        self._handlers: dict[str, list[RoomHandler]] = {}

    def add(self, room: str, handler: RoomHandler) -> bool:
        """Add a handler; returns True if this is the room's first handler."""
        with self._lock:
            handlers = self._handlers.setdefault(room, [])
            handlers.append(handler)
            return len(handlers) == 1

    def remove(self, room: str, handler: RoomHandler) -> bool:
        """Remove a handler; returns True if the room has no handlers left."""
        with self._lock:
            handlers = self._handlers.get(room, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                _ = self._handlers.pop(room, None)
                return True
            return False

    def rooms(self) -> list[str]:
        with self._lock:
            return list(self._handlers)

    def dispatch(self, room: str, payload: dict[str, Any]) -> int:
        with self._lock:
            handlers = list(self._handlers.get(room, []))
        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Handler for room {room} failed: {e}")
        return len(handlers)


class MQTTBroadcaster(Broadcaster):
    """MQTT event broadcaster for queue snapshots."""

    def __init__(self, broker: str, port: int, topic_prefix: str = "kidqueue"):
        self.broker: str = broker
        self.port: int = port
        self.topic_prefix: str = topic_prefix.rstrip("/")
        self.client: mqtt.Client | None = None
        self.connected: bool = False
        self._handlers: _HandlerRegistry = _HandlerRegistry()

    def topic_for(self, room: str) -> str:
        return f"{self.topic_prefix}/{room.replace(':', '/', 1)}"

    def room_for(self, topic: str) -> str | None:
        prefix = f"{self.topic_prefix}/"
        if not topic.startswith(prefix):
            return None
        return topic[len(prefix) :].replace("/", ":", 1)

    @override
    def connect(self) -> bool:
        try:
            self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
            self.client.on_connect = self._on_connect
            self.client.on_disconnect = self._on_disconnect
            self.client.on_message = self._on_message
            _ = self.client.connect(self.broker, self.port, keepalive=60)
            _ = self.client.loop_start()
            self.connected = True
            return True
        except Exception as e:
            logger.warning(f"Failed to connect to MQTT broker: {e}")
            return False

    @override
    def disconnect(self) -> None:
        if self.client:
            _ = self.client.loop_stop()
            _ = self.client.disconnect()
            self.connected = False

    @override
    def publish(self, room: str, payload: dict[str, JsonValue]) -> bool:
        if not self.connected or not self.client:
            return False
        try:
            result = self.client.publish(self.topic_for(room), json.dumps(payload), qos=1)
            return result.rc == mqtt.MQTT_ERR_SUCCESS
        except Exception as e:
            logger.error(f"Error publishing event: {e}")
            return False

    @override
    def subscribe(self, room: str, handler: RoomHandler) -> bool:
        if not self.connected or not self.client:
            return False
        first = self._handlers.add(room, handler)
        if first:
            result, _mid = self.client.subscribe(self.topic_for(room), qos=1)
            # NO_CONN is fine: _on_connect subscribes every known room
            if result not in (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
                logger.warning(f"Failed to subscribe to {room}: rc={result}")
                _ = self._handlers.remove(room, handler)
                return False
        return True

    @override
    def unsubscribe(self, room: str, handler: RoomHandler) -> None:
        last = self._handlers.remove(room, handler)
        if last and self.client:
            _ = self.client.unsubscribe(self.topic_for(room))

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        self.connected = not reason_code.is_failure
        if self.connected:
            # Subscriptions do not survive a reconnect with a clean session
            for room in self._handlers.rooms():
                _ = client.subscribe(self.topic_for(room), qos=1)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        logger.info(f"Disconnected from MQTT broker: {reason_code}")

    def _on_message(self, client, userdata, msg):
        room = self.room_for(msg.topic)
        if room is None:
            return
        try:
            payload = json.loads(msg.payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Dropping undecodable message on {msg.topic}: {e}")
            return
        _ = self._handlers.dispatch(room, payload)


class InMemoryBroadcaster(Broadcaster):
    """In-process broadcaster; handlers run synchronously on publish."""

    def __init__(self):
        self._handlers: _HandlerRegistry = _HandlerRegistry()
        self.connected: bool = False

    @override
    def connect(self) -> bool:
        self.connected = True
        return True

    @override
    def disconnect(self) -> None:
        self.connected = False

    @override
    def publish(self, room: str, payload: dict[str, JsonValue]) -> bool:
        # Round-trip through JSON so subscribers see exactly what MQTT would deliver
        _ = self._handlers.dispatch(room, json.loads(json.dumps(payload)))
        return True

    @override
    def subscribe(self, room: str, handler: RoomHandler) -> bool:
        _ = self._handlers.add(room, handler)
        return True

    @override
    def unsubscribe(self, room: str, handler: RoomHandler) -> None:
        _ = self._handlers.remove(room, handler)


class NoOpBroadcaster(Broadcaster):
    """No-operation broadcaster for testing or when push is disabled."""

    @override
    def connect(self) -> bool:
        return True

    @override
    def disconnect(self) -> None:
        pass

    @override
    def publish(self, room: str, payload: dict[str, JsonValue]) -> bool:
        return True

    @override
    def subscribe(self, room: str, handler: RoomHandler) -> bool:
        return False

    @override
    def unsubscribe(self, room: str, handler: RoomHandler) -> None:
        pass


_broadcaster: Broadcaster | None = None
_broadcaster_config: dict[str, Any] | None = None


def get_broadcaster(
    broadcast_type: str, broker: str, port: int, topic_prefix: str = "kidqueue"
) -> Broadcaster:
    """Get or create global broadcaster instance based on config."""
    global _broadcaster, _broadcaster_config

    desired_config = {
        "broadcast_type": broadcast_type,
        "broker": broker,
        "port": port,
        "topic_prefix": topic_prefix,
    }

    if _broadcaster is not None and _broadcaster_config == desired_config:
        return _broadcaster

    # Config mismatch, shut the old one down first
    if _broadcaster is not None:
        shutdown_broadcaster()

    broadcaster: Broadcaster
    if broadcast_type == "mqtt":
        broadcaster = MQTTBroadcaster(broker, port, topic_prefix)
    elif broadcast_type == "memory":
        broadcaster = InMemoryBroadcaster()
    else:
        broadcaster = NoOpBroadcaster()

    if not broadcaster.connect():
        logger.warning(f"Broadcaster '{broadcast_type}' failed to connect, publishes will be dropped")

    _broadcaster = broadcaster
    _broadcaster_config = desired_config
    return _broadcaster


def shutdown_broadcaster() -> None:
    """Shutdown global broadcaster."""
    global _broadcaster, _broadcaster_config
    if _broadcaster:
        _broadcaster.disconnect()
        _broadcaster = None
        _broadcaster_config = None
