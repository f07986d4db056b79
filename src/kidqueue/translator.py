"""Conversion between queue ORM rows and validated pydantic records."""

import logging
import time
from uuid import uuid4

from pydantic import ValidationError

from .exceptions import MalformedRecord
from .models import QueueEntry, Student, Vehicle
from .schemas import QueueEntryRecord, QueueStatus, StudentRecord, VehicleRecord

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current time in milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    """Opaque identifier without underscores, safe inside QR payloads."""
    return uuid4().hex


def db_entry_to_record(db_entry: QueueEntry) -> QueueEntryRecord:
    """Convert SQLAlchemy QueueEntry to a validated QueueEntryRecord.

    Raises:
        MalformedRecord: If the stored row does not satisfy the schema
    """
    try:
        return QueueEntryRecord(
            id=db_entry.id,
            student_id=db_entry.student_id,
            parent_id=db_entry.parent_id,
            school_id=db_entry.school_id,
            vehicle_id=db_entry.vehicle_id,
            status=QueueStatus(db_entry.status),
            queue_position=db_entry.queue_position,
            entered_at=db_entry.entered_at,
            called_at=db_entry.called_at,
            picked_up_at=db_entry.picked_up_at,
            teacher_id=db_entry.teacher_id,
        )
    except (ValidationError, ValueError) as e:
        logger.error(f"Rejecting malformed queue entry {db_entry.id}: {e}")
        raise MalformedRecord(f"Queue entry '{db_entry.id}' is malformed: {e}") from e


def new_db_entry(
    *,
    student_id: str,
    parent_id: str,
    school_id: str,
    queue_position: int,
    vehicle_id: str | None = None,
    entered_at: int | None = None,
) -> QueueEntry:
    """Create a waiting SQLAlchemy QueueEntry (not persisted)."""
    return QueueEntry(
        id=new_id(),
        student_id=student_id,
        parent_id=parent_id,
        school_id=school_id,
        vehicle_id=vehicle_id,
        status=QueueStatus.waiting.value,
        queue_position=queue_position,
        entered_at=entered_at if entered_at is not None else now_ms(),
    )


def db_student_to_record(db_student: Student) -> StudentRecord:
    return StudentRecord(
        id=db_student.id,
        name=db_student.name,
        grade=db_student.grade,
        parent_id=db_student.parent_id,
        school_id=db_student.school_id,
        qr_code=db_student.qr_code,
    )


def db_vehicle_to_record(db_vehicle: Vehicle, student_ids: list[str]) -> VehicleRecord:
    return VehicleRecord(
        id=db_vehicle.id,
        parent_id=db_vehicle.parent_id,
        license_plate=db_vehicle.license_plate,
        make=db_vehicle.make,
        model=db_vehicle.model,
        color=db_vehicle.color,
        qr_code=db_vehicle.qr_code,
        student_ids=student_ids,
    )
