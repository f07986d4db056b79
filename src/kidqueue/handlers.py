"""Request handlers for scans and manual queue changes.

Transport-agnostic: an HTTP route or callable function resolves the bearer
credential to an Actor and forwards here. Queue errors are recovered into
ApiResponse envelopes; anything unexpected propagates to the transport.
"""

import logging
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec

from .exceptions import InvalidQRCode, KidQueueError, NotFound, Unauthorized
from .qr import parse_qr_data
from .queue_manager import QueueManager
from .registry import SchoolRegistry
from .schemas import (
    Actor,
    ApiResponse,
    EnqueueResult,
    QueueAction,
    StudentRecord,
    VehicleEnqueueResult,
)

logger = logging.getLogger(__name__)

P = ParamSpec("P")


def recover_errors(handler: Callable[P, ApiResponse]) -> Callable[P, ApiResponse]:
    """Turn KidQueueError into a failed ApiResponse."""

    @wraps(handler)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> ApiResponse:
        try:
            return handler(*args, **kwargs)
        except KidQueueError as e:
            logger.info(f"{handler.__name__} rejected: {e}")
            return ApiResponse(success=False, error=e.message, error_kind=e.kind)

    return wrapper


def _student_message(result: EnqueueResult) -> str:
    match result.action:
        case QueueAction.added:
            return f"{result.student_name} added to pickup queue (position {result.position})"
        case QueueAction.called:
            return f"{result.student_name} has been called for pickup"
        case QueueAction.picked_up:
            return f"{result.student_name} has been picked up"
        case QueueAction.already_queued:
            return f"{result.student_name} is already in the pickup queue"


def _vehicle_response(result: VehicleEnqueueResult) -> ApiResponse:
    if result.action is QueueAction.already_queued:
        message = "All students for this vehicle are already in queue"
    else:
        message = f"Added {len(result.added_student_ids)} student(s) to pickup queue"
    return ApiResponse(
        success=True,
        message=message,
        action=result.action,
        data=result.to_payload(),
    )


class QueueHandlers:
    """Entry points used by scan stations, parent apps and teacher screens."""

    def __init__(self, manager: QueueManager, registry: SchoolRegistry):
        self.manager: QueueManager = manager
        self.registry: SchoolRegistry = registry

    @recover_errors
    def scan(self, qr_code: str, school_id: str, actor: Actor) -> ApiResponse:
        """Handle a teacher scanning a student or vehicle QR code."""
        if not actor.can_manage_school(school_id):
            raise Unauthorized("Unauthorized teacher or invalid school")

        qr_data = parse_qr_data(qr_code)
        if qr_data.kind == "student":
            student = self.registry.find_student_by_qr(qr_code.strip())
            if student is None or student.school_id != school_id:
                raise NotFound("student", qr_data.id, "Student not found or wrong school")
            result = self.manager.enqueue_or_advance(student.id, school_id, actor_id=actor.user_id)
            return ApiResponse(
                success=True,
                message=_student_message(result),
                action=result.action,
                data=result.to_payload(),
            )

        if qr_data.kind == "vehicle":
            vehicle = self.registry.find_vehicle_by_qr(qr_code.strip())
            if vehicle is None:
                raise NotFound("vehicle", qr_data.id, "Vehicle not found")
            return _vehicle_response(self.manager.enqueue_vehicle(vehicle.id, None, school_id))

        raise InvalidQRCode("Unknown QR code type")

    @recover_errors
    def scan_plate(self, license_plate: str, school_id: str, actor: Actor) -> ApiResponse:
        """Handle a license plate read at the pickup lane."""
        if not actor.can_manage_school(school_id):
            raise Unauthorized("Unauthorized teacher or invalid school")

        vehicle = self.registry.find_vehicle_by_plate(license_plate)
        if vehicle is None:
            raise NotFound("vehicle", license_plate, f"No vehicle registered with plate {license_plate}")
        return _vehicle_response(self.manager.enqueue_vehicle(vehicle.id, None, school_id))

    @recover_errors
    def add(self, student_id: str, actor: Actor, vehicle_id: str | None = None) -> ApiResponse:
        """Parent adds their own student to the queue by hand."""
        student: StudentRecord | None = self.registry.get_student(student_id)
        if student is None:
            raise NotFound("student", student_id, "Student not found")
        if student.parent_id != actor.user_id:
            raise Unauthorized("Unauthorized")

        result = self.manager.enqueue_or_advance(
            student.id, student.school_id, actor.user_id, vehicle_id, advance=False
        )
        return ApiResponse(
            success=True,
            message=_student_message(result),
            action=result.action,
            data=result.to_payload(),
        )

    @recover_errors
    def remove(self, entry_id: str, actor: Actor) -> ApiResponse:
        result = self.manager.dequeue(entry_id, actor)
        return ApiResponse(
            success=True,
            message=f"{result.removed_student_name} removed from pickup queue",
            data=result.to_payload(),
        )

    @recover_errors
    def school_queue(self, school_id: str, actor: Actor) -> ApiResponse:
        if not actor.can_manage_school(school_id):
            raise Unauthorized("Unauthorized for this school")
        return ApiResponse(success=True, data=self.manager.get_school_queue(school_id).to_payload())

    @recover_errors
    def my_entries(self, actor: Actor) -> ApiResponse:
        entries = self.manager.get_parent_entries(actor.user_id)
        return ApiResponse(success=True, data=[entry.to_payload() for entry in entries])

    @recover_errors
    def history(
        self, school_id: str, actor: Actor, page: int = 1, limit: int | None = None
    ) -> ApiResponse:
        if not actor.can_manage_school(school_id):
            raise Unauthorized("Unauthorized for this school")
        history = self.manager.get_history(school_id, page=page, limit=limit)
        data = history.to_payload()
        data["pages"] = history.pages
        return ApiResponse(success=True, data=data)

    @recover_errors
    def update_student(
        self,
        student_id: str,
        actor: Actor,
        *,
        name: str | None = None,
        grade: str | None = None,
        school_id: str | None = None,
    ) -> ApiResponse:
        student = self.registry.update_student(
            student_id, actor.user_id, name=name, grade=grade, school_id=school_id
        )
        return ApiResponse(success=True, data=student.to_payload())

    @recover_errors
    def delete_student(self, student_id: str, actor: Actor) -> ApiResponse:
        _ = self.manager.delete_student(student_id, actor.user_id)
        return ApiResponse(success=True, message="Student deleted successfully")

    @recover_errors
    def update_vehicle(
        self,
        vehicle_id: str,
        actor: Actor,
        *,
        license_plate: str | None = None,
        make: str | None = None,
        model: str | None = None,
        color: str | None = None,
    ) -> ApiResponse:
        vehicle = self.registry.update_vehicle(
            vehicle_id, actor.user_id, license_plate=license_plate, make=make, model=model, color=color
        )
        return ApiResponse(success=True, data=vehicle.to_payload())

    @recover_errors
    def delete_vehicle(self, vehicle_id: str, actor: Actor) -> ApiResponse:
        self.registry.delete_vehicle(vehicle_id, actor.user_id)
        return ApiResponse(success=True, message="Vehicle deleted successfully")
