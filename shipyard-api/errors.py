from typing import Optional


class ApiError(Exception):
    status_code = 500
    code = "INTERNAL"
    rpc_code = "internal"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class InvalidArgumentError(ApiError):
    status_code = 400
    code = "INVALID_ARGUMENT"
    rpc_code = "invalid_argument"


class UnauthenticatedError(ApiError):
    status_code = 401
    code = "UNAUTHORIZED"
    rpc_code = "unauthenticated"


class ForbiddenError(ApiError):
    status_code = 403
    code = "FORBIDDEN"
    rpc_code = "permission_denied"


class NotFoundError(ApiError):
    status_code = 404
    code = "NOT_FOUND"
    rpc_code = "not_found"


class ConflictError(ApiError):
    """Resource already exists, or its resourceVersion moved underneath us."""

    status_code = 409
    code = "CONFLICT"
    rpc_code = "aborted"


class AlreadyExistsError(ConflictError):
    code = "ALREADY_EXISTS"
    rpc_code = "already_exists"


class PayloadTooLargeError(ApiError):
    status_code = 413
    code = "PAYLOAD_TOO_LARGE"
    rpc_code = "resource_exhausted"


class InternalError(ApiError):
    pass


class DeadlineExceededError(ApiError):
    status_code = 504
    code = "DEADLINE_EXCEEDED"
    rpc_code = "deadline_exceeded"
