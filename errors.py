from typing import Optional


class ServiceError(ValueError):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    status_code = 400

    def __init__(
        self, message: str, errors: Optional[list[dict[str, str]]] = None
    ) -> None:
        super().__init__(message)
        self.errors = errors

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls("Validation failed", [{"field": field, "message": message}])


class InvalidReferenceError(ValidationError):
    """A payload points at a category or budget the caller does not own."""


class AuthError(ServiceError):
    status_code = 401


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class BackendError(ServiceError):
    status_code = 500
