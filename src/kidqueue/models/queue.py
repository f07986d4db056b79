"""Queue entry model for the school pickup queue."""

from typing_extensions import override

from sqlalchemy import BigInteger, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

ACTIVE_STATUSES: tuple[str, ...] = ("waiting", "called")

_ACTIVE_PREDICATE = text("status IN ('waiting', 'called')")


class QueueEntry(Base):
    """One student's occupancy of a pickup queue slot.

    Active entries (waiting/called) hold a dense position 1..N per school.
    Picked-up entries are kept as history with their last position.
    """

    __tablename__ = "queue_entries"  # pyright: ignore[reportUnannotatedClassAttribute]
    __table_args__ = (  # pyright: ignore[reportUnannotatedClassAttribute]
        # At most one active entry per student, enforced by the store itself
        Index(
            "uq_queue_entries_active_student",
            "student_id",
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
        Index("ix_queue_entries_school_status", "school_id", "status", "queue_position"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    student_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    parent_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    school_id: Mapped[str] = mapped_column(String, nullable=False)
    vehicle_id: Mapped[str | None] = mapped_column(String, nullable=True)

    status: Mapped[str] = mapped_column(String, nullable=False)
    queue_position: Mapped[int] = mapped_column(Integer, nullable=False)

    # Timestamps in milliseconds
    entered_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    called_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    picked_up_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)

    teacher_id: Mapped[str | None] = mapped_column(String, nullable=True)

    @override
    def __repr__(self) -> str:
        return (
            f"<QueueEntry(student_id={self.student_id}, school_id={self.school_id}, "
            f"status={self.status}, queue_position={self.queue_position})>"
        )


class SchoolQueueLock(Base):
    """Per-school serialization row claimed by every queue mutation.

    The version is bumped once per committed mutation and doubles as the
    snapshot version delivered to viewers.
    """

    __tablename__ = "school_queue_locks"  # pyright: ignore[reportUnannotatedClassAttribute]

    school_id: Mapped[str] = mapped_column(String, primary_key=True)
    version: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    @override
    def __repr__(self) -> str:
        return f"<SchoolQueueLock(school_id={self.school_id}, version={self.version})>"
