#!/usr/bin/env python3
"""
Kiosk feed for a school's pickup queue.

Subscribes to the school's MQTT room and prints every snapshot as it
arrives. Useful for driving a simple display or checking that scans are
being broadcast.

Usage:
    python watch_queue.py <school_id>                    # localhost:1883
    python watch_queue.py <school_id> broker.local 1883
"""

import logging
import sys
import time

from kidqueue.broadcast import MQTTBroadcaster, school_room
from kidqueue.config import Config
from kidqueue.schemas import QueueEvent, QueueStatus


def print_snapshot(payload):
    event = QueueEvent.model_validate(payload)
    snapshot = event.snapshot
    print(f"\n[{event.event_type.value}] version {snapshot.version}, {len(snapshot.entries)} in queue")
    for entry in snapshot.entries:
        marker = "→" if entry.status is QueueStatus.called else " "
        print(f"  {marker} {entry.queue_position:>3}  {entry.student_id}  ({entry.status.value})")


def watch(school_id, broker="localhost", port=1883):
    """
    Print snapshots for a school until interrupted.

    Args:
        school_id: School whose room to follow
        broker: MQTT broker hostname
        port: MQTT broker port
    """
    broadcaster = MQTTBroadcaster(broker, port, Config.MQTT_TOPIC_PREFIX)
    if not broadcaster.connect():
        print(f"Could not connect to {broker}:{port}")
        sys.exit(1)

    room = school_room(school_id)
    # Wait for the connection callback before subscribing
    time.sleep(1)
    if not broadcaster.subscribe(room, print_snapshot):
        print(f"Could not subscribe to {broadcaster.topic_for(room)}")
        broadcaster.disconnect()
        sys.exit(1)

    print(f"Watching {broadcaster.topic_for(room)} (Ctrl+C to stop)")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopped.")
    finally:
        broadcaster.unsubscribe(room, print_snapshot)
        broadcaster.disconnect()


def main():
    """Main entry point."""
    if len(sys.argv) < 2:
        print("Usage: python watch_queue.py <school_id> [broker] [port]")
        sys.exit(1)

    logging.basicConfig(level=Config.LOG_LEVEL)

    school_id = sys.argv[1]
    broker = sys.argv[2] if len(sys.argv) > 2 else Config.MQTT_BROKER
    port = int(sys.argv[3]) if len(sys.argv) > 3 else Config.MQTT_PORT

    print("=" * 60)
    print("Pickup Queue Watcher")
    print("=" * 60)
    print(f"Broker: {broker}:{port}")
    print(f"School: {school_id}")
    print("=" * 60)

    watch(school_id, broker, port)


if __name__ == "__main__":
    main()
