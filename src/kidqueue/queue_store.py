"""Session-level reads and writes on queue tables.

Every function here runs inside a caller-owned transaction. Functions that
feed position assignment, duplicate checks or renumbering must only be
called after claim_school() in the same transaction.
"""

from collections.abc import Iterable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .models import ACTIVE_STATUSES, QueueEntry, SchoolQueueLock, Student, VehicleStudent
from .schemas import QueueSnapshot
from .translator import db_entry_to_record, now_ms


def claim_school(session: Session, school_id: str) -> int:
    """Serialize on a school's queue and bump its version.

    On PostgreSQL the UPDATE holds a row lock until commit; on SQLite it takes
    the database write lock. A concurrent first claim loses with an
    IntegrityError on the lock row's primary key.

    Returns:
        The school's new queue version
    """
    stmt = (
        update(SchoolQueueLock)
        .where(SchoolQueueLock.school_id == school_id)
        .values(version=SchoolQueueLock.version + 1)
        .returning(SchoolQueueLock.version)
    )
    version: int | None = session.execute(stmt).scalar_one_or_none()
    if version is None:
        session.add(SchoolQueueLock(school_id=school_id, version=1))
        session.flush()
        version = 1
    return version


def read_version(session: Session, school_id: str) -> int:
    stmt = select(SchoolQueueLock.version).where(SchoolQueueLock.school_id == school_id)
    return session.execute(stmt).scalar_one_or_none() or 0


def count_active(session: Session, school_id: str) -> int:
    stmt = (
        select(func.count())
        .select_from(QueueEntry)
        .where(QueueEntry.school_id == school_id, QueueEntry.status.in_(ACTIVE_STATUSES))
    )
    return session.execute(stmt).scalar_one()


def active_entries(session: Session, school_id: str) -> Sequence[QueueEntry]:
    stmt = (
        select(QueueEntry)
        .where(QueueEntry.school_id == school_id, QueueEntry.status.in_(ACTIVE_STATUSES))
        .order_by(QueueEntry.queue_position, QueueEntry.entered_at)
        .execution_options(populate_existing=True)
    )
    return session.execute(stmt).scalars().all()


def find_active_entry(session: Session, student_id: str) -> QueueEntry | None:
    stmt = (
        select(QueueEntry)
        .where(QueueEntry.student_id == student_id, QueueEntry.status.in_(ACTIVE_STATUSES))
        .execution_options(populate_existing=True)
    )
    return session.execute(stmt).scalar_one_or_none()


def active_student_ids(session: Session, student_ids: Iterable[str]) -> set[str]:
    ids = list(student_ids)
    if not ids:
        return set()
    stmt = select(QueueEntry.student_id).where(
        QueueEntry.student_id.in_(ids), QueueEntry.status.in_(ACTIVE_STATUSES)
    )
    return set(session.execute(stmt).scalars().all())


def vehicle_students(session: Session, vehicle_id: str, school_id: str) -> Sequence[Student]:
    """Students linked to a vehicle who attend the given school, in link order."""
    stmt = (
        select(Student)
        .join(VehicleStudent, VehicleStudent.student_id == Student.id)
        .where(VehicleStudent.vehicle_id == vehicle_id, Student.school_id == school_id)
        .order_by(VehicleStudent.link_order)
    )
    return session.execute(stmt).scalars().all()


def trailing_parent_ids(session: Session, school_id: str, position: int) -> set[str]:
    """Parents of the active entries that close_gap would move."""
    stmt = select(QueueEntry.parent_id).where(
        QueueEntry.school_id == school_id,
        QueueEntry.status.in_(ACTIVE_STATUSES),
        QueueEntry.queue_position > position,
    )
    return set(session.execute(stmt).scalars().all())


def close_gap(session: Session, school_id: str, position: int) -> int:
    """Shift active entries behind a vacated position up by one.

    The vacating entry must already be deleted or marked picked_up and
    flushed.

    Returns:
        Number of entries renumbered
    """
    stmt = (
        update(QueueEntry)
        .where(
            QueueEntry.school_id == school_id,
            QueueEntry.status.in_(ACTIVE_STATUSES),
            QueueEntry.queue_position > position,
        )
        .values(queue_position=QueueEntry.queue_position - 1)
        .execution_options(synchronize_session="fetch")
    )
    result = session.execute(stmt)
    return result.rowcount  # pyright: ignore[reportAttributeAccessIssue]


def build_snapshot(session: Session, school_id: str, version: int | None = None) -> QueueSnapshot:
    """Snapshot the active queue as seen by this transaction."""
    if version is None:
        version = read_version(session, school_id)
    return QueueSnapshot(
        school_id=school_id,
        version=version,
        entries=[db_entry_to_record(entry) for entry in active_entries(session, school_id)],
        generated_at=now_ms(),
    )
