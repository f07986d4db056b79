"""Registration and lookup of schools, users, students and vehicles.

These records carry no state machine of their own; the queue manager
only references them by id. Deleting a student touches the queue and so
lives on QueueManager.delete_student.
"""

import logging
from collections.abc import Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from . import queue_store
from .exceptions import NotFound, StudentInQueue, Unauthorized
from .models import School, Student, User, Vehicle, VehicleStudent
from .qr import generate_qr_data, normalize_plate
from .schemas import SchoolRecord, StudentRecord, UserRecord, UserRole, VehicleRecord
from .translator import db_student_to_record, db_vehicle_to_record, new_id, now_ms

logger = logging.getLogger(__name__)


class SchoolRegistry:
    """SQLAlchemy-backed registry of the records a queue entry refers to.

    Example:
        registry = SchoolRegistry(session_factory)
        school = registry.add_school("Maple Elementary", "1 Maple St")
        parent = registry.add_user("p@example.com", "Pat", UserRole.parent)
        student = registry.register_student(parent.id, school.id, "Alex", "3")
        vehicle = registry.register_vehicle(parent.id, "abc-123", [student.id])
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory: sessionmaker[Session] = session_factory

    # -------------------------------------------------------------------------
    # Schools and users
    # -------------------------------------------------------------------------

    def add_school(self, name: str, address: str = "", phone_number: str | None = None) -> SchoolRecord:
        with self.session_factory() as session, session.begin():
            school = School(
                id=new_id(),
                name=name,
                address=address,
                phone_number=phone_number,
                created_at=now_ms(),
            )
            session.add(school)
            return SchoolRecord(id=school.id, name=name, address=address, phone_number=phone_number)

    def add_user(
        self, email: str, name: str, role: UserRole, school_id: str | None = None
    ) -> UserRecord:
        """Create a user. Teachers must be attached to a school."""
        if role is UserRole.teacher and school_id is None:
            raise ValueError("Teachers must belong to a school")
        with self.session_factory() as session, session.begin():
            user = User(
                id=new_id(),
                email=email,
                name=name,
                role=role.value,
                school_id=school_id,
                created_at=now_ms(),
            )
            session.add(user)
            return UserRecord(id=user.id, email=email, name=name, role=role, school_id=school_id)

    def get_user(self, user_id: str) -> UserRecord | None:
        with self.session_factory() as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            return UserRecord(
                id=user.id,
                email=user.email,
                name=user.name,
                role=UserRole(user.role),
                school_id=user.school_id,
            )

    # -------------------------------------------------------------------------
    # Students
    # -------------------------------------------------------------------------

    def register_student(self, parent_id: str, school_id: str, name: str, grade: str) -> StudentRecord:
        """Register a student under a parent and generate its QR payload.

        Raises:
            NotFound: If the school does not exist
        """
        with self.session_factory() as session, session.begin():
            if session.get(School, school_id) is None:
                raise NotFound("school", school_id)
            student_id = new_id()
            student = Student(
                id=student_id,
                name=name,
                grade=grade,
                parent_id=parent_id,
                school_id=school_id,
                qr_code=generate_qr_data("student", student_id, now_ms()),
                created_at=now_ms(),
            )
            session.add(student)
            logger.info(f"Registered student {student_id} for parent {parent_id}")
            return db_student_to_record(student)

    def get_student(self, student_id: str) -> StudentRecord | None:
        with self.session_factory() as session:
            student = session.get(Student, student_id)
            return db_student_to_record(student) if student else None

    def find_student_by_qr(self, qr_code: str) -> StudentRecord | None:
        with self.session_factory() as session:
            student = session.execute(
                select(Student).where(Student.qr_code == qr_code)
            ).scalar_one_or_none()
            return db_student_to_record(student) if student else None

    def list_students(self, parent_id: str) -> list[StudentRecord]:
        with self.session_factory() as session:
            stmt = select(Student).where(Student.parent_id == parent_id).order_by(Student.created_at)
            return [db_student_to_record(s) for s in session.execute(stmt).scalars().all()]

    def update_student(
        self,
        student_id: str,
        parent_id: str,
        *,
        name: str | None = None,
        grade: str | None = None,
        school_id: str | None = None,
    ) -> StudentRecord:
        """Update a parent's own student.

        Moving to another school claims the current school's queue first,
        so the move cannot race a scan of the same student.

        Raises:
            NotFound: If the student or the new school does not exist
            Unauthorized: If the student belongs to another parent
            StudentInQueue: If moving schools while the student has an active entry
        """
        with self.session_factory() as session, session.begin():
            student = self._owned_student(session, student_id, parent_id)
            if name:
                student.name = name
            if grade:
                student.grade = grade
            if school_id and school_id != student.school_id:
                if session.get(School, school_id) is None:
                    raise NotFound("school", school_id)
                _ = queue_store.claim_school(session, student.school_id)
                if queue_store.find_active_entry(session, student_id) is not None:
                    raise StudentInQueue(student_id)
                logger.info(f"Student {student_id} moved from {student.school_id} to {school_id}")
                student.school_id = school_id
            session.flush()
            return db_student_to_record(student)

    # -------------------------------------------------------------------------
    # Vehicles
    # -------------------------------------------------------------------------

    def register_vehicle(
        self,
        parent_id: str,
        license_plate: str,
        student_ids: Sequence[str] = (),
        *,
        make: str | None = None,
        model: str | None = None,
        color: str | None = None,
    ) -> VehicleRecord:
        """Register a vehicle and link the students it picks up.

        Raises:
            ValueError: If the plate has no letters or digits
            NotFound: If a linked student does not exist
            Unauthorized: If a linked student belongs to another parent
        """
        plate_key = normalize_plate(license_plate)
        if not plate_key:
            raise ValueError(f"Invalid license plate: {license_plate!r}")

        with self.session_factory() as session, session.begin():
            vehicle_id = new_id()
            vehicle = Vehicle(
                id=vehicle_id,
                parent_id=parent_id,
                license_plate=license_plate.strip().upper(),
                plate_key=plate_key,
                make=make,
                model=model,
                color=color,
                qr_code=generate_qr_data("vehicle", vehicle_id, now_ms()),
                created_at=now_ms(),
            )
            session.add(vehicle)
            session.flush()
            linked = self._link(session, vehicle, student_ids)
            logger.info(f"Registered vehicle {vehicle_id} ({plate_key}) with {len(linked)} student(s)")
            return db_vehicle_to_record(vehicle, linked)

    def link_students(self, vehicle_id: str, student_ids: Sequence[str]) -> VehicleRecord:
        """Link more students to an existing vehicle; already linked ones are kept."""
        with self.session_factory() as session, session.begin():
            vehicle = session.get(Vehicle, vehicle_id)
            if vehicle is None:
                raise NotFound("vehicle", vehicle_id)
            linked = self._link(session, vehicle, student_ids)
            return db_vehicle_to_record(vehicle, linked)

    def get_vehicle(self, vehicle_id: str) -> VehicleRecord | None:
        with self.session_factory() as session:
            vehicle = session.get(Vehicle, vehicle_id)
            if vehicle is None:
                return None
            return db_vehicle_to_record(vehicle, self._linked_ids(session, vehicle_id))

    def find_vehicle_by_qr(self, qr_code: str) -> VehicleRecord | None:
        with self.session_factory() as session:
            vehicle = session.execute(
                select(Vehicle).where(Vehicle.qr_code == qr_code)
            ).scalar_one_or_none()
            if vehicle is None:
                return None
            return db_vehicle_to_record(vehicle, self._linked_ids(session, vehicle.id))

    def find_vehicle_by_plate(self, license_plate: str) -> VehicleRecord | None:
        """Look up a vehicle by plate, ignoring case, spaces and punctuation."""
        plate_key = normalize_plate(license_plate)
        if not plate_key:
            return None
        with self.session_factory() as session:
            vehicle = session.execute(
                select(Vehicle).where(Vehicle.plate_key == plate_key).order_by(Vehicle.created_at).limit(1)
            ).scalar_one_or_none()
            if vehicle is None:
                return None
            return db_vehicle_to_record(vehicle, self._linked_ids(session, vehicle.id))

    def update_vehicle(
        self,
        vehicle_id: str,
        parent_id: str,
        *,
        license_plate: str | None = None,
        make: str | None = None,
        model: str | None = None,
        color: str | None = None,
    ) -> VehicleRecord:
        """Update a parent's own vehicle; empty values leave a field unchanged.

        Raises:
            ValueError: If the new plate has no letters or digits
            NotFound: If the vehicle does not exist
            Unauthorized: If the vehicle belongs to another parent
        """
        with self.session_factory() as session, session.begin():
            vehicle = self._owned_vehicle(session, vehicle_id, parent_id)
            if license_plate:
                plate_key = normalize_plate(license_plate)
                if not plate_key:
                    raise ValueError(f"Invalid license plate: {license_plate!r}")
                vehicle.license_plate = license_plate.strip().upper()
                vehicle.plate_key = plate_key
            if make:
                vehicle.make = make
            if model:
                vehicle.model = model
            if color:
                vehicle.color = color
            session.flush()
            return db_vehicle_to_record(vehicle, self._linked_ids(session, vehicle_id))

    def delete_vehicle(self, vehicle_id: str, parent_id: str) -> None:
        """Delete a parent's own vehicle and its student links.

        Queue entries that left in this vehicle keep its id as history.

        Raises:
            NotFound: If the vehicle does not exist
            Unauthorized: If the vehicle belongs to another parent
        """
        with self.session_factory() as session, session.begin():
            vehicle = self._owned_vehicle(session, vehicle_id, parent_id)
            _ = session.execute(delete(VehicleStudent).where(VehicleStudent.vehicle_id == vehicle_id))
            session.delete(vehicle)
            logger.info(f"Deleted vehicle {vehicle_id} of parent {parent_id}")

    @staticmethod
    def _owned_student(session: Session, student_id: str, parent_id: str) -> Student:
        student = session.get(Student, student_id)
        if student is None:
            raise NotFound("student", student_id, "Student not found")
        if student.parent_id != parent_id:
            raise Unauthorized("Unauthorized")
        return student

    @staticmethod
    def _owned_vehicle(session: Session, vehicle_id: str, parent_id: str) -> Vehicle:
        vehicle = session.get(Vehicle, vehicle_id)
        if vehicle is None:
            raise NotFound("vehicle", vehicle_id, "Vehicle not found")
        if vehicle.parent_id != parent_id:
            raise Unauthorized("Unauthorized")
        return vehicle

    def _link(self, session: Session, vehicle: Vehicle, student_ids: Sequence[str]) -> list[str]:
        existing = self._linked_ids(session, vehicle.id)
        next_order = session.execute(
            select(func.coalesce(func.max(VehicleStudent.link_order), 0)).where(
                VehicleStudent.vehicle_id == vehicle.id
            )
        ).scalar_one()

        for student_id in student_ids:
            if student_id in existing:
                continue
            student = session.get(Student, student_id)
            if student is None:
                raise NotFound("student", student_id)
            if student.parent_id != vehicle.parent_id:
                raise Unauthorized(f"Student '{student_id}' does not belong to the vehicle owner")
            next_order += 1
            session.add(
                VehicleStudent(vehicle_id=vehicle.id, student_id=student_id, link_order=next_order)
            )
            existing.append(student_id)
        session.flush()
        return existing

    @staticmethod
    def _linked_ids(session: Session, vehicle_id: str) -> list[str]:
        stmt = (
            select(VehicleStudent.student_id)
            .where(VehicleStudent.vehicle_id == vehicle_id)
            .order_by(VehicleStudent.link_order)
        )
        return list(session.execute(stmt).scalars().all())
