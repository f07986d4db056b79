"""Exceptions raised by the pickup queue.

Validation errors (NotFound, Unauthorized, NoAssociatedStudents,
InvalidQRCode) are raised by the queue manager and registry and recovered
into typed responses by the request handlers. WriteConflict never leaves
the queue manager; callers see TransientFailure once retries run out.
"""


class KidQueueError(Exception):
    """Base exception for the pickup queue.

    Args:
        message: Human-readable error message
        kind: Stable error kind for programmatic handling
    """

    kind: str = "error"

    def __init__(self, message: str, kind: str | None = None):
        super().__init__(message)
        self.message: str = message
        if kind is not None:
            self.kind = kind

    def __str__(self) -> str:
        return f"[{self.kind}] {self.message}"


class NotFound(KidQueueError):
    """A student, vehicle, school, user or queue entry does not exist."""

    kind = "not_found"

    def __init__(self, resource: str, resource_id: str, detail: str | None = None):
        message = detail or f"{resource.capitalize()} '{resource_id}' not found"
        super().__init__(message)
        self.resource: str = resource
        self.resource_id: str = resource_id


class NoAssociatedStudents(KidQueueError):
    """A vehicle scan resolved to zero students at the scanning school."""

    kind = "no_associated_students"

    def __init__(self, vehicle_id: str, school_id: str):
        super().__init__(f"No students found for vehicle '{vehicle_id}' at this school")
        self.vehicle_id: str = vehicle_id
        self.school_id: str = school_id


class Unauthorized(KidQueueError):
    """The acting user lacks the role or school match for the target."""

    kind = "unauthorized"


class StudentInQueue(KidQueueError):
    """A change that would strand the student's active queue entry."""

    kind = "student_in_queue"

    def __init__(self, student_id: str):
        super().__init__(f"Student '{student_id}' is in the pickup queue; remove the entry first")
        self.student_id: str = student_id


class InvalidQRCode(KidQueueError):
    """A scanned QR payload could not be parsed."""

    kind = "invalid_qr_code"


class MalformedRecord(KidQueueError):
    """A stored record failed validation at the store boundary."""

    kind = "malformed_record"


class WriteConflict(KidQueueError):
    """A transaction lost a race with a concurrent writer and was rolled back."""

    kind = "write_conflict"


class TransientFailure(KidQueueError):
    """An operation kept conflicting and gave up after bounded retries."""

    kind = "transient_failure"

    def __init__(self, operation: str, attempts: int):
        super().__init__(f"{operation} could not be committed after {attempts} attempts")
        self.operation: str = operation
        self.attempts: int = attempts
