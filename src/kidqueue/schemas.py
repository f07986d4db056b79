"""
Pydantic schemas for queue records, results and events.
Shared between the queue manager, request handlers and viewers.

Field names are snake_case in Python and camelCase on the wire.
"""

import math
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, JsonValue, computed_field, model_validator
from pydantic.alias_generators import to_camel


class QueueStatus(StrEnum):
    waiting = "waiting"
    called = "called"
    picked_up = "picked_up"

    @property
    def is_active(self) -> bool:
        return self is not QueueStatus.picked_up


class QueueAction(StrEnum):
    added = "added"
    called = "called"
    picked_up = "picked_up"
    already_queued = "already_queued"


class UserRole(StrEnum):
    parent = "parent"
    teacher = "teacher"
    admin = "admin"


class QueueEventType(StrEnum):
    updated = "queue:updated"
    student_called = "queue:student-called"
    student_picked_up = "queue:student-picked-up"
    entry_removed = "queue:entry-removed"


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict[str, JsonValue]:
        """Dump to a JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class QueueEntryRecord(_Schema):
    """Validated view of a stored queue entry."""

    id: str = Field(..., min_length=1)
    student_id: str = Field(..., min_length=1)
    parent_id: str = Field(..., min_length=1)
    school_id: str = Field(..., min_length=1)
    vehicle_id: str | None = None
    status: QueueStatus
    queue_position: int = Field(..., gt=0, strict=True)
    entered_at: int = Field(..., ge=0)
    called_at: int | None = None
    picked_up_at: int | None = None
    teacher_id: str | None = None

    @model_validator(mode="after")
    def check_status_timestamps(self) -> Self:
        if self.status is QueueStatus.called and self.called_at is None:
            raise ValueError("called entry must have calledAt")
        if self.status is QueueStatus.picked_up and self.picked_up_at is None:
            raise ValueError("picked_up entry must have pickedUpAt")
        return self

    @property
    def is_active(self) -> bool:
        return self.status.is_active


class EnqueueResult(_Schema):
    """Outcome of a single-student scan or manual add."""

    action: QueueAction
    student_id: str
    student_name: str
    entry_id: str | None = None
    position: int | None = None


class VehicleEnqueueResult(_Schema):
    """Outcome of a batched vehicle scan."""

    vehicle_id: str
    added_student_ids: list[str] = Field(default_factory=list)
    already_queued_student_ids: list[str] = Field(default_factory=list)
    positions: dict[str, int] = Field(default_factory=dict)

    @computed_field
    @property
    def action(self) -> QueueAction:
        if self.added_student_ids:
            return QueueAction.added
        return QueueAction.already_queued


class DequeueResult(_Schema):
    entry_id: str
    school_id: str
    removed_student_name: str
    removed_position: int


class QueueSnapshot(_Schema):
    """Full active queue of one school, ordered by position."""

    school_id: str
    version: int = 0
    entries: list[QueueEntryRecord] = Field(default_factory=list)
    generated_at: int

    @property
    def positions(self) -> list[int]:
        return [entry.queue_position for entry in self.entries]


class QueueEvent(_Schema):
    """Message published to a room after a committed queue change."""

    event_type: QueueEventType
    school_id: str
    student_ids: list[str] = Field(default_factory=list)
    timestamp: int
    snapshot: QueueSnapshot


class HistoryPage(_Schema):
    entries: list[QueueEntryRecord]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class Actor(_Schema):
    """Identity resolved from a bearer credential."""

    user_id: str
    role: UserRole
    school_id: str | None = None

    def can_manage_school(self, school_id: str) -> bool:
        if self.role is UserRole.admin:
            return True
        return self.role is UserRole.teacher and self.school_id == school_id


class SchoolRecord(_Schema):
    id: str
    name: str
    address: str
    phone_number: str | None = None


class UserRecord(_Schema):
    id: str
    email: str
    name: str
    role: UserRole
    school_id: str | None = None


class StudentRecord(_Schema):
    id: str
    name: str
    grade: str
    parent_id: str
    school_id: str
    qr_code: str


class VehicleRecord(_Schema):
    id: str
    parent_id: str
    license_plate: str
    make: str | None = None
    model: str | None = None
    color: str | None = None
    qr_code: str
    student_ids: list[str] = Field(default_factory=list)


class ApiResponse(_Schema):
    """Response envelope returned by the request handlers."""

    success: bool
    message: str | None = None
    action: QueueAction | None = None
    data: JsonValue = None
    error: str | None = None
    error_kind: str | None = None
