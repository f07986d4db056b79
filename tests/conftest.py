"""Shared test fixtures for kidqueue tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy import select

from kidqueue import (
    Actor,
    InMemoryBroadcaster,
    QueueHandlers,
    QueueManager,
    SchoolRegistry,
    UserRole,
    create_db_engine,
    create_session_factory,
    init_db,
)
from kidqueue.broadcast import school_room
from kidqueue.models import ACTIVE_STATUSES, QueueEntry
from kidqueue.schemas import SchoolRecord, StudentRecord, UserRecord

if TYPE_CHECKING:
    from collections.abc import Generator

    from sqlalchemy.engine import Engine
    from sqlalchemy.orm import Session, sessionmaker


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom ini values."""
    parser.addini(
        "mqtt_test_broker",
        help="host:port of the MQTT broker used by broadcaster tests",
        default="localhost:1883",
    )


@pytest.fixture
def in_memory_engine() -> Generator[Engine, None, None]:
    """Create SQLite in-memory engine with all tables created.

    Yields:
        Engine: SQLAlchemy engine with in-memory SQLite database
    """
    engine = create_db_engine("sqlite:///:memory:", echo=False)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(in_memory_engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(in_memory_engine)


@pytest.fixture
def broadcaster() -> InMemoryBroadcaster:
    broadcaster = InMemoryBroadcaster()
    _ = broadcaster.connect()
    return broadcaster


@pytest.fixture
def manager(session_factory: sessionmaker[Session], broadcaster: InMemoryBroadcaster) -> QueueManager:
    return QueueManager(session_factory, broadcaster, max_attempts=3, retry_backoff_ms=0)


@pytest.fixture
def registry(session_factory: sessionmaker[Session]) -> SchoolRegistry:
    return SchoolRegistry(session_factory)


@pytest.fixture
def handlers(manager: QueueManager, registry: SchoolRegistry) -> QueueHandlers:
    return QueueHandlers(manager, registry)


@dataclass
class SchoolWorld:
    """A school with one teacher, two parents and their students."""

    school: SchoolRecord
    other_school: SchoolRecord
    teacher: UserRecord
    admin: UserRecord
    parent: UserRecord
    other_parent: UserRecord
    students: dict[str, StudentRecord] = field(default_factory=dict)

    @property
    def teacher_actor(self) -> Actor:
        return Actor(user_id=self.teacher.id, role=UserRole.teacher, school_id=self.school.id)

    @property
    def admin_actor(self) -> Actor:
        return Actor(user_id=self.admin.id, role=UserRole.admin)

    @property
    def parent_actor(self) -> Actor:
        return Actor(user_id=self.parent.id, role=UserRole.parent)

    @property
    def other_parent_actor(self) -> Actor:
        return Actor(user_id=self.other_parent.id, role=UserRole.parent)

    def sid(self, name: str) -> str:
        return self.students[name].id


@pytest.fixture
def world(registry: SchoolRegistry) -> SchoolWorld:
    """Students A, B, C, D, E, F belong to `parent`; G to `other_parent`."""
    school = registry.add_school("Maple Elementary", "1 Maple St")
    other_school = registry.add_school("Oak Middle", "2 Oak Ave")
    world = SchoolWorld(
        school=school,
        other_school=other_school,
        teacher=registry.add_user("teacher@maple.test", "Ms. T", UserRole.teacher, school.id),
        admin=registry.add_user("admin@kidqueue.test", "Admin", UserRole.admin),
        parent=registry.add_user("parent@home.test", "Pat", UserRole.parent),
        other_parent=registry.add_user("other@home.test", "Sam", UserRole.parent),
    )
    for name in "ABCDEF":
        world.students[name] = registry.register_student(world.parent.id, school.id, name, "3")
    world.students["G"] = registry.register_student(world.other_parent.id, school.id, "G", "4")
    return world


class EventRecorder:
    """Collects payloads published to one room."""

    def __init__(self):
        self.payloads: list[dict[str, Any]] = []

    def __call__(self, payload: dict[str, Any]) -> None:
        self.payloads.append(payload)

    @property
    def event_types(self) -> list[str]:
        return [p["eventType"] for p in self.payloads]


@pytest.fixture
def school_events(broadcaster: InMemoryBroadcaster, world: SchoolWorld) -> EventRecorder:
    recorder = EventRecorder()
    _ = broadcaster.subscribe(school_room(world.school.id), recorder)
    return recorder


def active_positions(session_factory: sessionmaker[Session], school_id: str) -> dict[str, tuple[int, str]]:
    """student_id -> (queue_position, status) for the school's active entries."""
    with session_factory() as session:
        rows = session.execute(
            select(QueueEntry).where(
                QueueEntry.school_id == school_id, QueueEntry.status.in_(ACTIVE_STATUSES)
            )
        ).scalars()
        return {row.student_id: (row.queue_position, row.status) for row in rows}


def assert_dense(session_factory: sessionmaker[Session], school_id: str) -> None:
    """Active positions are exactly 1..N and no student is active twice."""
    with session_factory() as session:
        rows = session.execute(
            select(QueueEntry).where(
                QueueEntry.school_id == school_id, QueueEntry.status.in_(ACTIVE_STATUSES)
            )
        ).scalars().all()
    positions = sorted(row.queue_position for row in rows)
    assert positions == list(range(1, len(rows) + 1))
    student_ids = [row.student_id for row in rows]
    assert len(student_ids) == len(set(student_ids))
