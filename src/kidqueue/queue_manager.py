"""Pickup queue manager.

Owns queue-entry creation, position assignment, status transitions,
removal with renumbering, and the real-time broadcast of snapshots.

Consistency model:
- Every mutation runs in one transaction that first claims the school's
  lock row (see queue_store.claim_school), so "count active entries ->
  write new entry" and "delete -> renumber" are serialized per school and
  either commit together or not at all.
- The duplicate-entry guard is evaluated after the claim, inside the same
  transaction as the write. A partial unique index on active student rows
  backs it up at the store level.
- Lost races (lock timeouts, serialization failures, unique violations)
  roll back and re-run the whole operation a bounded number of times.
- Snapshots are taken inside the transaction and published only after
  commit, so viewers never observe a gap or an uncommitted state.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from . import queue_store
from .broadcast import Broadcaster, get_broadcaster, parent_room, school_room
from .config import Config
from .exceptions import NoAssociatedStudents, NotFound, TransientFailure, Unauthorized, WriteConflict
from .models import ACTIVE_STATUSES, QueueEntry, Student, Vehicle, VehicleStudent
from .schemas import (
    Actor,
    DequeueResult,
    EnqueueResult,
    HistoryPage,
    QueueAction,
    QueueEntryRecord,
    QueueEvent,
    QueueEventType,
    QueueSnapshot,
    QueueStatus,
    VehicleEnqueueResult,
)
from .translator import db_entry_to_record, new_db_entry, now_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONFLICT_MARKERS: tuple[str, ...] = (
    "locked",
    "busy",
    "deadlock",
    "could not serialize",
    "serialization failure",
)


def is_write_conflict(exc: DBAPIError) -> bool:
    """Whether a store error means a concurrent writer won the race."""
    if isinstance(exc, IntegrityError):
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig).lower()
        return any(marker in message for marker in _CONFLICT_MARKERS)
    return False


@dataclass
class _Change:
    event_type: QueueEventType
    student_ids: list[str]
    parent_ids: set[str]


@dataclass
class _Outcome(Generic[T]):
    result: T
    snapshot: QueueSnapshot | None = None
    changes: list[_Change] = field(default_factory=list)


class QueueManager:
    """Pickup queue operations over an injected store and broadcaster.

    Example:
        engine = create_db_engine("sqlite:///kidqueue.db")
        init_db(engine)
        manager = QueueManager(create_session_factory(engine), InMemoryBroadcaster())

        result = manager.enqueue_or_advance(student_id, school_id)
        print(result.action, result.position)
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        broadcaster: Broadcaster | None = None,
        *,
        max_attempts: int | None = None,
        retry_backoff_ms: int | None = None,
    ):
        """Initialize manager with session factory and broadcaster.

        Args:
            session_factory: SQLAlchemy session factory (sessionmaker)
            broadcaster: Notification channel; defaults to the configured global one
            max_attempts: Attempts per mutation before TransientFailure
            retry_backoff_ms: Base delay between attempts, grows linearly
        """
        self.session_factory: sessionmaker[Session] = session_factory

        if broadcaster is None:
            broadcaster = get_broadcaster(
                broadcast_type=Config.BROADCAST_TYPE,
                broker=Config.MQTT_BROKER,
                port=Config.MQTT_PORT,
                topic_prefix=Config.MQTT_TOPIC_PREFIX,
            )
        self.broadcaster: Broadcaster = broadcaster

        self.max_attempts: int = max(1, max_attempts or Config.QUEUE_COMMIT_RETRIES)
        self.retry_backoff_ms: int = (
            Config.QUEUE_RETRY_BACKOFF_MS if retry_backoff_ms is None else retry_backoff_ms
        )

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def enqueue_or_advance(
        self,
        student_id: str,
        school_id: str,
        parent_id: str | None = None,
        vehicle_id: str | None = None,
        *,
        actor_id: str | None = None,
        advance: bool = True,
    ) -> EnqueueResult:
        """Queue a student, or move an already queued student forward.

        Scan once to queue (waiting), again to call, again to pick up.

        Args:
            student_id: Student being scanned or added
            school_id: School whose queue is targeted
            parent_id: Owning parent; must match the student's parent when given
            vehicle_id: Vehicle the student leaves in, owned by the same parent
            actor_id: Teacher performing the scan, recorded on transitions
            advance: When False an active student is reported as already queued

        Raises:
            NotFound: Student missing or attending another school
            Unauthorized: parent_id or vehicle_id not owned by the student's parent
            TransientFailure: Concurrent writers kept winning
        """

        def work(session: Session) -> _Outcome[EnqueueResult]:
            version = queue_store.claim_school(session, school_id)

            student = session.get(Student, student_id)
            if student is None or student.school_id != school_id:
                raise NotFound("student", student_id, "Student not found or wrong school")
            if parent_id is not None and parent_id != student.parent_id:
                raise Unauthorized(f"Student '{student_id}' does not belong to this parent")
            if vehicle_id is not None:
                vehicle = session.get(Vehicle, vehicle_id)
                if vehicle is None or vehicle.parent_id != student.parent_id:
                    raise Unauthorized("Invalid vehicle")

            existing = queue_store.find_active_entry(session, student_id)
            if existing is None:
                return self._add_entry(session, student, school_id, vehicle_id, version)
            if not advance:
                return _Outcome(
                    EnqueueResult(
                        action=QueueAction.already_queued,
                        student_id=student.id,
                        student_name=student.name,
                        entry_id=existing.id,
                        position=existing.queue_position,
                    )
                )
            return self._advance_entry(session, existing, student, actor_id, version)

        return self._run(f"enqueue_or_advance({student_id})", work)

    def enqueue_vehicle(
        self,
        vehicle_id: str,
        parent_id: str | None,
        school_id: str,
    ) -> VehicleEnqueueResult:
        """Queue every student linked to a vehicle in a single batch.

        Students already active are skipped. New entries take positions
        N+1..N+k in link order, N being the active count at batch start.

        Raises:
            NotFound: Vehicle missing
            Unauthorized: parent_id given and not the vehicle's owner
            NoAssociatedStudents: No linked students attend this school
            TransientFailure: Concurrent writers kept winning
        """

        def work(session: Session) -> _Outcome[VehicleEnqueueResult]:
            version = queue_store.claim_school(session, school_id)

            vehicle = session.get(Vehicle, vehicle_id)
            if vehicle is None:
                raise NotFound("vehicle", vehicle_id, "Vehicle not found")
            if parent_id is not None and parent_id != vehicle.parent_id:
                raise Unauthorized("Invalid vehicle")

            students = queue_store.vehicle_students(session, vehicle_id, school_id)
            if not students:
                raise NoAssociatedStudents(vehicle_id, school_id)

            already_active = queue_store.active_student_ids(session, (s.id for s in students))
            base = queue_store.count_active(session, school_id)
            entered_at = now_ms()

            result = VehicleEnqueueResult(vehicle_id=vehicle_id)
            parent_ids: set[str] = set()
            for student in students:
                if student.id in already_active:
                    result.already_queued_student_ids.append(student.id)
                    continue
                position = base + len(result.added_student_ids) + 1
                session.add(
                    new_db_entry(
                        student_id=student.id,
                        parent_id=student.parent_id,
                        school_id=school_id,
                        vehicle_id=vehicle_id,
                        queue_position=position,
                        entered_at=entered_at,
                    )
                )
                result.added_student_ids.append(student.id)
                result.positions[student.id] = position
                parent_ids.add(student.parent_id)

            if not result.added_student_ids:
                logger.info(f"All students for vehicle {vehicle_id} already queued at {school_id}")
                return _Outcome(result)

            session.flush()
            logger.info(
                f"Vehicle {vehicle_id} queued {len(result.added_student_ids)} student(s) "
                f"at {school_id}, positions {base + 1}..{base + len(result.added_student_ids)}"
            )
            return _Outcome(
                result,
                queue_store.build_snapshot(session, school_id, version),
                [_Change(QueueEventType.updated, list(result.added_student_ids), parent_ids)],
            )

        return self._run(f"enqueue_vehicle({vehicle_id})", work)

    def dequeue(self, entry_id: str, actor: Actor) -> DequeueResult:
        """Remove an active entry and close the gap behind it.

        Allowed for the owning parent, a teacher of the entry's school, or an admin.

        Raises:
            NotFound: Entry missing or already picked up
            Unauthorized: Actor may not remove this entry
            TransientFailure: Concurrent writers kept winning
        """

        def work(session: Session) -> _Outcome[DequeueResult]:
            school_id = session.execute(
                select(QueueEntry.school_id).where(QueueEntry.id == entry_id)
            ).scalar_one_or_none()
            if school_id is None:
                raise NotFound("queue entry", entry_id, "Queue entry not found")

            version = queue_store.claim_school(session, school_id)

            # Re-read under the claim; position may have moved meanwhile
            entry = session.execute(
                select(QueueEntry)
                .where(QueueEntry.id == entry_id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if entry is None or not QueueStatus(entry.status).is_active:
                raise NotFound("queue entry", entry_id, "Queue entry is no longer in the queue")

            is_owner = entry.parent_id == actor.user_id
            if not is_owner and not actor.can_manage_school(entry.school_id):
                raise Unauthorized("Unauthorized")

            student = session.get(Student, entry.student_id)
            student_name = student.name if student else entry.student_id
            position = entry.queue_position
            student_id = entry.student_id
            parent_id = entry.parent_id

            moved_parents = queue_store.trailing_parent_ids(session, school_id, position)
            session.delete(entry)
            session.flush()
            shifted = queue_store.close_gap(session, school_id, position)

            logger.info(
                f"Removed {student_id} from position {position} at {school_id} "
                f"by {actor.user_id}, renumbered {shifted}"
            )
            return _Outcome(
                DequeueResult(
                    entry_id=entry_id,
                    school_id=school_id,
                    removed_student_name=student_name,
                    removed_position=position,
                ),
                queue_store.build_snapshot(session, school_id, version),
                [_Change(QueueEventType.entry_removed, [student_id], {parent_id} | moved_parents)],
            )

        return self._run(f"dequeue({entry_id})", work)

    def delete_student(self, student_id: str, parent_id: str) -> DequeueResult | None:
        """Delete a parent's own student together with its queue entries.

        An active entry is vacated exactly like dequeue, so the positions
        behind it close up in the same transaction.

        Returns:
            The vacated active entry, or None if the student was not queued

        Raises:
            NotFound: Student missing
            Unauthorized: Student belongs to another parent
            TransientFailure: Concurrent writers kept winning
        """

        def work(session: Session) -> _Outcome[DequeueResult | None]:
            student = session.get(Student, student_id)
            if student is None:
                raise NotFound("student", student_id, "Student not found")
            if student.parent_id != parent_id:
                raise Unauthorized("Unauthorized")
            school_id = student.school_id

            version = queue_store.claim_school(session, school_id)
            session.refresh(student)
            if student.school_id != school_id:
                raise WriteConflict(f"Student '{student_id}' moved schools")

            entry = queue_store.find_active_entry(session, student_id)
            removed: DequeueResult | None = None
            changes: list[_Change] = []
            if entry is not None:
                position = entry.queue_position
                moved_parents = queue_store.trailing_parent_ids(session, school_id, position)
                session.delete(entry)
                session.flush()
                _ = queue_store.close_gap(session, school_id, position)
                removed = DequeueResult(
                    entry_id=entry.id,
                    school_id=school_id,
                    removed_student_name=student.name,
                    removed_position=position,
                )
                changes.append(_Change(QueueEventType.entry_removed, [student_id], {parent_id} | moved_parents))

            # History rows and vehicle links go with the student
            _ = session.execute(delete(QueueEntry).where(QueueEntry.student_id == student_id))
            _ = session.execute(delete(VehicleStudent).where(VehicleStudent.student_id == student_id))
            session.delete(student)
            session.flush()

            logger.info(f"Deleted student {student_id} of parent {parent_id}")
            if removed is None:
                return _Outcome(None)
            return _Outcome(removed, queue_store.build_snapshot(session, school_id, version), changes)

        return self._run(f"delete_student({student_id})", work)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_school_queue(self, school_id: str) -> QueueSnapshot:
        """Active queue of a school ordered by position."""
        with self.session_factory() as session, session.begin():
            return queue_store.build_snapshot(session, school_id)

    def get_parent_entries(self, parent_id: str) -> list[QueueEntryRecord]:
        """A parent's active entries, newest first."""
        with self.session_factory() as session:
            stmt = (
                select(QueueEntry)
                .where(
                    QueueEntry.parent_id == parent_id,
                    QueueEntry.status.in_(ACTIVE_STATUSES),
                )
                .order_by(QueueEntry.entered_at.desc(), QueueEntry.queue_position.desc())
            )
            return [db_entry_to_record(e) for e in session.execute(stmt).scalars().all()]

    def get_entry(self, entry_id: str) -> QueueEntryRecord | None:
        with self.session_factory() as session:
            entry = session.get(QueueEntry, entry_id)
            return db_entry_to_record(entry) if entry else None

    def get_history(self, school_id: str, page: int = 1, limit: int | None = None) -> HistoryPage:
        """Picked-up entries of a school, most recent pickup first."""
        limit = limit or Config.HISTORY_PAGE_LIMIT
        page = max(1, page)
        picked_up = (QueueEntry.school_id == school_id, QueueEntry.status == QueueStatus.picked_up.value)

        with self.session_factory() as session:
            total = session.execute(
                select(func.count()).select_from(QueueEntry).where(*picked_up)
            ).scalar_one()
            stmt = (
                select(QueueEntry)
                .where(*picked_up)
                .order_by(QueueEntry.picked_up_at.desc(), QueueEntry.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            entries = [db_entry_to_record(e) for e in session.execute(stmt).scalars().all()]

        return HistoryPage(entries=entries, page=page, limit=limit, total=total)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _add_entry(
        self,
        session: Session,
        student: Student,
        school_id: str,
        vehicle_id: str | None,
        version: int,
    ) -> _Outcome[EnqueueResult]:
        position = queue_store.count_active(session, school_id) + 1
        entry = new_db_entry(
            student_id=student.id,
            parent_id=student.parent_id,
            school_id=school_id,
            vehicle_id=vehicle_id,
            queue_position=position,
        )
        session.add(entry)
        session.flush()

        logger.info(f"Queued {student.id} at {school_id} position {position}")
        return _Outcome(
            EnqueueResult(
                action=QueueAction.added,
                student_id=student.id,
                student_name=student.name,
                entry_id=entry.id,
                position=position,
            ),
            queue_store.build_snapshot(session, school_id, version),
            [_Change(QueueEventType.updated, [student.id], {student.parent_id})],
        )

    def _advance_entry(
        self,
        session: Session,
        entry: QueueEntry,
        student: Student,
        actor_id: str | None,
        version: int,
    ) -> _Outcome[EnqueueResult]:
        timestamp = now_ms()
        status = QueueStatus(entry.status)

        if status is QueueStatus.waiting:
            entry.status = QueueStatus.called.value
            entry.called_at = timestamp
            action = QueueAction.called
            event_type = QueueEventType.student_called
        else:
            entry.status = QueueStatus.picked_up.value
            entry.picked_up_at = timestamp
            action = QueueAction.picked_up
            event_type = QueueEventType.student_picked_up
        if actor_id is not None:
            entry.teacher_id = actor_id
        session.flush()

        parent_ids = {entry.parent_id}
        if action is QueueAction.picked_up:
            # The entry left the active set; keep positions dense
            parent_ids |= queue_store.trailing_parent_ids(session, entry.school_id, entry.queue_position)
            _ = queue_store.close_gap(session, entry.school_id, entry.queue_position)

        logger.info(f"{student.id} {action.value} at {entry.school_id} by {actor_id}")
        return _Outcome(
            EnqueueResult(
                action=action,
                student_id=student.id,
                student_name=student.name,
                entry_id=entry.id,
                position=entry.queue_position,
            ),
            queue_store.build_snapshot(session, entry.school_id, version),
            [_Change(event_type, [student.id], parent_ids)],
        )

    def _run(self, operation: str, work: Callable[[Session], _Outcome[T]]) -> T:
        """Run work in a transaction, retrying lost races, then broadcast."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                outcome = self._attempt(work)
            except WriteConflict as e:
                logger.warning(f"{operation} attempt {attempt}/{self.max_attempts} conflicted: {e}")
                if attempt < self.max_attempts and self.retry_backoff_ms:
                    time.sleep(self.retry_backoff_ms * attempt / 1000)
                continue

            if outcome.snapshot is not None:
                self._broadcast(outcome.snapshot, outcome.changes)
            return outcome.result

        logger.error(f"{operation} gave up after {self.max_attempts} attempts")
        raise TransientFailure(operation, self.max_attempts)

    def _attempt(self, work: Callable[[Session], _Outcome[T]]) -> _Outcome[T]:
        try:
            with self.session_factory() as session, session.begin():
                return work(session)
        except (IntegrityError, OperationalError) as e:
            if is_write_conflict(e):
                raise WriteConflict(str(e.orig)) from e
            raise

    def _broadcast(self, snapshot: QueueSnapshot, changes: list[_Change]) -> None:
        for change in changes:
            event = QueueEvent(
                event_type=change.event_type,
                school_id=snapshot.school_id,
                student_ids=change.student_ids,
                timestamp=now_ms(),
                snapshot=snapshot,
            )
            payload = event.to_payload()
            rooms = [school_room(snapshot.school_id)]
            rooms.extend(parent_room(parent_id) for parent_id in sorted(change.parent_ids))
            for room in rooms:
                try:
                    if not self.broadcaster.publish(room, payload):
                        logger.warning(f"Publish of {change.event_type.value} to {room} was not delivered")
                except Exception as e:
                    logger.warning(f"Publish of {change.event_type.value} to {room} failed: {e}")
