"""Typed lifecycle errors; ``code`` and ``http_status`` drive the HTTP error body."""

from typing import Any


class LifecycleError(Exception):
    code: str = "LIFECYCLE_ERROR"
    http_status: int = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            data["details"] = self.details
        return data


class NotFoundError(LifecycleError):
    code = "NOT_FOUND"
    http_status = 404


class ValidationError(LifecycleError):
    code = "VALIDATION_ERROR"
    http_status = 400


class PreconditionFailed(ValidationError):
    code = "PRECONDITION_FAILED"

    def __init__(self, device_id: str, expected: Any, actual: Any, target: Any = None):
        super().__init__(
            f"device {device_id} is {_value(actual)}, expected {_value(expected)}",
            device_id=device_id,
            expected=_value(expected),
            actual=_value(actual),
            target=_value(target),
        )


class ConflictError(LifecycleError):
    code = "CONFLICT"
    http_status = 409


def _value(status: Any) -> Any:
    return getattr(status, "value", status)
