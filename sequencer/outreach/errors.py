"""Errors raised by the enrollment engine.

Each error carries the status code the HTTP layer answers with.
"""


class OutreachError(Exception):
    """Base class for enrollment engine errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthenticated(OutreachError):
    status_code = 401

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class NotFound(OutreachError):
    status_code = 404

    def __init__(self, message: str = "Enrollment not found"):
        super().__init__(message)


class InvalidTransition(OutreachError):
    status_code = 400


class AlreadyFinished(OutreachError):
    status_code = 400

    def __init__(self, message: str = "Enrollment is already finished"):
        super().__init__(message)


class MissingField(OutreachError):
    status_code = 400

    def __init__(self, field: str):
        super().__init__(f"Missing required field: {field}")
        self.field = field


class InvalidAction(OutreachError):
    status_code = 400


class NoStepsRemaining(OutreachError):
    status_code = 400

    def __init__(self, message: str = "No more steps to execute"):
        super().__init__(message)


class AlreadyEnrolled(OutreachError):
    status_code = 409

    def __init__(self, enrollment_id: str, status: str):
        super().__init__(f"Contact already has an {status} enrollment in this sequence")
        self.enrollment_id = enrollment_id
        self.status = status


class InternalError(OutreachError):
    status_code = 500


def require_actor(actor) -> str:
    """Return the actor identity or raise Unauthenticated."""
    if not actor:
        raise Unauthenticated()
    return actor
