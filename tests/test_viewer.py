"""Tests for live queue viewers (push and poll fallback)."""

from __future__ import annotations

import threading
from pathlib import Path

from conftest import SchoolWorld

from kidqueue import (
    InMemoryBroadcaster,
    QueueManager,
    QueueViewer,
    SchoolRegistry,
    create_db_engine,
    create_session_factory,
    init_db,
)
from kidqueue.broadcast import NoOpBroadcaster, school_room
from kidqueue.schemas import QueueSnapshot


class SnapshotSink:
    def __init__(self):
        self.snapshots: list[QueueSnapshot] = []
        self.changed: threading.Event = threading.Event()

    def __call__(self, snapshot: QueueSnapshot) -> None:
        self.snapshots.append(snapshot)
        self.changed.set()

    @property
    def versions(self) -> list[int]:
        return [s.version for s in self.snapshots]


def test_push_mode_follows_changes(
    manager: QueueManager, broadcaster: InMemoryBroadcaster, world: SchoolWorld
) -> None:
    sink = SnapshotSink()
    viewer = QueueViewer(manager, broadcaster, world.school.id, sink)

    assert viewer.start() == "push"
    assert sink.snapshots[0].entries == []

    _ = manager.enqueue_or_advance(world.sid("A"), world.school.id)
    _ = manager.enqueue_or_advance(world.sid("B"), world.school.id)
    _ = manager.enqueue_or_advance(world.sid("A"), world.school.id)

    assert sink.versions == [0, 1, 2, 3]
    assert [e.student_id for e in sink.snapshots[-1].entries] == [world.sid("A"), world.sid("B")]
    assert sink.snapshots[-1].entries[0].status == "called"
    assert viewer.latest is sink.snapshots[-1]
    viewer.stop()


def test_stop_unsubscribes(
    manager: QueueManager, broadcaster: InMemoryBroadcaster, world: SchoolWorld
) -> None:
    sink = SnapshotSink()
    viewer = QueueViewer(manager, broadcaster, world.school.id, sink)
    _ = viewer.start()
    viewer.stop()

    _ = manager.enqueue_or_advance(world.sid("A"), world.school.id)

    assert sink.versions == [0]
    assert viewer.mode is None


def test_stale_and_repeated_snapshots_are_dropped(
    manager: QueueManager, broadcaster: InMemoryBroadcaster, world: SchoolWorld
) -> None:
    sink = SnapshotSink()
    viewer = QueueViewer(manager, broadcaster, world.school.id, sink)
    _ = viewer.start()
    _ = manager.enqueue_or_advance(world.sid("A"), world.school.id)
    _ = manager.enqueue_or_advance(world.sid("B"), world.school.id)

    # A refresh of an unchanged queue repeats version 2
    assert viewer.refresh() is False

    stale = QueueSnapshot(school_id=world.school.id, version=1, entries=[], generated_at=0)
    _ = broadcaster.publish(
        school_room(world.school.id),
        {
            "eventType": "queue:updated",
            "schoolId": world.school.id,
            "studentIds": [],
            "timestamp": 0,
            "snapshot": stale.to_payload(),
        },
    )

    assert sink.versions == [0, 1, 2]
    assert len(viewer.latest.entries) == 2


def test_malformed_and_foreign_events_are_ignored(
    manager: QueueManager, broadcaster: InMemoryBroadcaster, world: SchoolWorld
) -> None:
    sink = SnapshotSink()
    viewer = QueueViewer(manager, broadcaster, world.school.id, sink)
    _ = viewer.start()
    room = school_room(world.school.id)

    _ = broadcaster.publish(room, {"eventType": "queue:updated"})
    foreign = QueueSnapshot(school_id=world.other_school.id, version=99, generated_at=0)
    _ = broadcaster.publish(
        room,
        {
            "eventType": "queue:updated",
            "schoolId": world.other_school.id,
            "timestamp": 0,
            "snapshot": foreign.to_payload(),
        },
    )

    assert sink.versions == [0]


def test_commit_during_initial_fetch_is_not_missed(
    manager: QueueManager, broadcaster: InMemoryBroadcaster, world: SchoolWorld, monkeypatch
) -> None:
    """A scan committed while the first snapshot is in flight still reaches the viewer."""
    real_get_school_queue = manager.get_school_queue

    def fetch_then_commit(school_id: str) -> QueueSnapshot:
        snapshot = real_get_school_queue(school_id)
        _ = manager.enqueue_or_advance(world.sid("A"), school_id)
        return snapshot

    monkeypatch.setattr(manager, "get_school_queue", fetch_then_commit)
    sink = SnapshotSink()
    viewer = QueueViewer(manager, broadcaster, world.school.id, sink)

    assert viewer.start() == "push"

    current = real_get_school_queue(world.school.id)
    assert viewer.latest.version == current.version
    assert [e.student_id for e in viewer.latest.entries] == [world.sid("A")]
    assert sink.versions == [1]
    viewer.stop()


def test_poll_fallback(tmp_path: Path) -> None:
    """Without push the viewer refetches and still converges."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'kidqueue.db'}", echo=False)
    init_db(engine)
    session_factory = create_session_factory(engine)
    registry = SchoolRegistry(session_factory)
    manager = QueueManager(session_factory, NoOpBroadcaster(), retry_backoff_ms=0)
    school = registry.add_school("Maple")
    student = registry.register_student("parent-1", school.id, "A", "1")
    sink = SnapshotSink()
    viewer = QueueViewer(manager, NoOpBroadcaster(), school.id, sink, poll_interval=0.05)

    assert viewer.start() == "poll"
    sink.changed.clear()

    _ = manager.enqueue_or_advance(student.id, school.id)

    assert sink.changed.wait(5)
    viewer.stop()
    engine.dispose()
    assert sink.snapshots[-1].version == 1
    assert [e.student_id for e in sink.snapshots[-1].entries] == [student.id]
