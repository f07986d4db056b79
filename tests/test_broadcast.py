"""Unit tests for queue broadcasters.

MQTTBroadcaster round-trip tests need the broker named by the
``mqtt_test_broker`` ini value and are skipped when it is unreachable.
"""

import socket
import threading
import time
from uuid import uuid4

import pytest

from kidqueue.broadcast import (
    InMemoryBroadcaster,
    MQTTBroadcaster,
    NoOpBroadcaster,
    get_broadcaster,
    parent_room,
    school_room,
    shutdown_broadcaster,
)


# ============================================================================
# Helper Functions
# ============================================================================


def is_mqtt_running(host: str = "localhost", port: int = 1883, timeout: float = 2) -> bool:
    """Check if an MQTT broker accepts TCP connections on host:port."""
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(timeout)
        result = sock.connect_ex((host, port))
        sock.close()
        return result == 0
    except OSError:
        return False


@pytest.fixture
def mqtt_address(pytestconfig: pytest.Config) -> tuple[str, int]:
    host, _, port = str(pytestconfig.getini("mqtt_test_broker")).partition(":")
    address = (host, int(port or 1883))
    if not is_mqtt_running(*address):
        pytest.skip(f"MQTT broker not running on {host}:{address[1]}")
    return address


@pytest.fixture
def mqtt_broadcaster(mqtt_address: tuple[str, int]):
    broadcaster = MQTTBroadcaster(*mqtt_address, topic_prefix=f"kidqueue-test/{uuid4().hex}")
    yield broadcaster
    broadcaster.disconnect()


@pytest.fixture(autouse=True)
def reset_global_broadcaster():
    yield
    shutdown_broadcaster()


# ============================================================================
# Rooms and topics
# ============================================================================


def test_room_names() -> None:
    assert school_room("s1") == "school:s1"
    assert parent_room("p1") == "parent:p1"


def test_topic_mapping() -> None:
    broadcaster = MQTTBroadcaster("localhost", 1883, topic_prefix="kidqueue/")
    assert broadcaster.topic_for("school:abc") == "kidqueue/school/abc"
    assert broadcaster.topic_for("parent:p1") == "kidqueue/parent/p1"
    assert broadcaster.room_for("kidqueue/school/abc") == "school:abc"
    assert broadcaster.room_for("other/school/abc") is None


def test_mqtt_without_connection() -> None:
    broadcaster = MQTTBroadcaster("localhost", 1883)
    assert broadcaster.publish("school:s1", {"x": 1}) is False
    assert broadcaster.subscribe("school:s1", lambda _: None) is False


# ============================================================================
# NoOpBroadcaster
# ============================================================================


class TestNoOpBroadcaster:
    def test_publish_succeeds(self) -> None:
        broadcaster = NoOpBroadcaster()
        assert broadcaster.connect() is True
        assert broadcaster.publish("school:s1", {"eventType": "queue:updated"}) is True

    def test_cannot_subscribe(self) -> None:
        """Viewers fall back to polling when subscribe reports False."""
        assert NoOpBroadcaster().subscribe("school:s1", lambda _: None) is False


# ============================================================================
# InMemoryBroadcaster
# ============================================================================


class TestInMemoryBroadcaster:
    def test_delivers_to_room_subscribers_only(self) -> None:
        broadcaster = InMemoryBroadcaster()
        received: list[dict] = []
        other: list[dict] = []
        _ = broadcaster.subscribe("school:s1", received.append)
        _ = broadcaster.subscribe("school:s2", other.append)

        assert broadcaster.publish("school:s1", {"version": 1}) is True

        assert received == [{"version": 1}]
        assert other == []

    def test_unsubscribe(self) -> None:
        broadcaster = InMemoryBroadcaster()
        received: list[dict] = []
        _ = broadcaster.subscribe("school:s1", received.append)
        broadcaster.unsubscribe("school:s1", received.append)

        _ = broadcaster.publish("school:s1", {"version": 1})

        assert received == []

    def test_payload_is_a_copy(self) -> None:
        broadcaster = InMemoryBroadcaster()
        received: list[dict] = []
        _ = broadcaster.subscribe("school:s1", received.append)
        payload = {"entries": [{"queuePosition": 1}]}

        _ = broadcaster.publish("school:s1", payload)
        payload["entries"].append({"queuePosition": 2})

        assert received[0] == {"entries": [{"queuePosition": 1}]}

    def test_failing_handler_does_not_stop_others(self) -> None:
        broadcaster = InMemoryBroadcaster()
        received: list[dict] = []

        def broken(_payload: dict) -> None:
            raise RuntimeError("handler bug")

        _ = broadcaster.subscribe("school:s1", broken)
        _ = broadcaster.subscribe("school:s1", received.append)

        assert broadcaster.publish("school:s1", {"version": 3}) is True
        assert received == [{"version": 3}]


# ============================================================================
# Global instance
# ============================================================================


class TestGetBroadcaster:
    def test_same_config_returns_same_instance(self) -> None:
        first = get_broadcaster("memory", "localhost", 1883)
        second = get_broadcaster("memory", "localhost", 1883)
        assert first is second
        assert isinstance(first, InMemoryBroadcaster)

    def test_config_change_replaces_instance(self) -> None:
        first = get_broadcaster("memory", "localhost", 1883)
        second = get_broadcaster("none", "localhost", 1883)
        assert first is not second
        assert isinstance(second, NoOpBroadcaster)
        assert first.connected is False

    def test_shutdown(self) -> None:
        first = get_broadcaster("memory", "localhost", 1883)
        shutdown_broadcaster()
        assert get_broadcaster("memory", "localhost", 1883) is not first


# ============================================================================
# MQTTBroadcaster (requires broker)
# ============================================================================


class TestMQTTBroadcaster:
    def test_connect_and_disconnect(self, mqtt_broadcaster: MQTTBroadcaster) -> None:
        assert mqtt_broadcaster.connect() is True
        assert mqtt_broadcaster.client is not None
        mqtt_broadcaster.disconnect()
        assert mqtt_broadcaster.connected is False

    def test_round_trip(self, mqtt_broadcaster: MQTTBroadcaster) -> None:
        assert mqtt_broadcaster.connect() is True
        for _ in range(50):
            if mqtt_broadcaster.client is not None and mqtt_broadcaster.client.is_connected():
                break
            time.sleep(0.1)
        received: list[dict] = []
        arrived = threading.Event()

        def handler(payload: dict) -> None:
            received.append(payload)
            arrived.set()

        assert mqtt_broadcaster.subscribe("school:s1", handler) is True
        # Give the broker a moment to register the subscription
        _ = arrived.wait(0.5)

        assert mqtt_broadcaster.publish("school:s1", {"version": 7}) is True
        assert arrived.wait(5)
        assert received[-1] == {"version": 7}
