from typing import Any, Dict, List, Optional

from models import ErrorDetail, ErrorResponse, HandlerResult


class ApiError(Exception):
    """Failure with a stable HTTP status and machine-readable code."""

    status_code: int = 500
    error_code: str = "INTERNAL"

    def __init__(self, error_code: Optional[str] = None, details: Optional[List[ErrorDetail]] = None):
        self.error_code = error_code or self.error_code
        self.details = details
        super().__init__(self.error_code)

    def to_body(self) -> Dict[str, Any]:
        return ErrorResponse(error=self.error_code, details=self.details).model_dump(exclude_none=True)

    def to_result(self) -> HandlerResult:
        return HandlerResult(status_code=self.status_code, body=self.to_body())


class UnauthenticatedError(ApiError):
    status_code = 401
    error_code = "UNAUTHORIZED"


class ForbiddenError(ApiError):
    status_code = 403
    error_code = "FORBIDDEN"


class InvalidPayloadError(ApiError):
    status_code = 400
    error_code = "INVALID_PAYLOAD"


class NothingToUpdateError(ApiError):
    status_code = 400
    error_code = "NOTHING_TO_UPDATE"


class IdempotencyKeyRequiredError(ApiError):
    status_code = 400
    error_code = "IDEMPOTENCY_KEY_REQUIRED"


class IdempotencyConflictError(ApiError):
    """A record for the key exists and must not be re-executed."""

    IN_PROGRESS = "IN_PROGRESS"
    RETRY_LATER = "RETRY_LATER"

    status_code = 409
    error_code = IN_PROGRESS


class InternalError(ApiError):
    status_code = 500
    error_code = "INTERNAL"


class UpstreamRejectedError(ApiError):
    """Remote procedure refused the mutation; its message is relayed verbatim."""

    status_code = 400
    error_code = "UPSTREAM_REJECTED"
