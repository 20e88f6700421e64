from typing import Any


class CategorizerError(Exception):
    """Base class for expected outcomes surfaced to the caller."""

    status_code = 500
    title = "Error"

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"title": self.title, "detail": self.message}
        payload.update(self.detail)
        return payload


class ValidationError(CategorizerError):
    status_code = 400
    title = "Validation failed"


class NotFoundError(CategorizerError):
    status_code = 404
    title = "Not found"


class ConflictError(CategorizerError):
    status_code = 409
    title = "Conflict"


class InsufficientDataError(CategorizerError):
    status_code = 400
    title = "Insufficient training data"


class ModelUnavailableError(CategorizerError):
    status_code = 404
    title = "No active model"


class TrainingCancelledError(CategorizerError):
    status_code = 409
    title = "Training cancelled"


class InternalError(CategorizerError):
    status_code = 500
    title = "Internal Server Error"
