from typing import Any, Dict, List, Optional


class RCMError(Exception):
    """Base class for errors raised by the revenue-cycle services."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(RCMError):
    status_code = 400

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message, {"errors": errors or []})
        self.errors = errors or []


class InvalidTransitionError(RCMError):
    status_code = 400

    def __init__(self, claim_id: Any, from_status: str, to_status: str):
        super().__init__(
            f"Claim {claim_id} cannot move from '{from_status}' to '{to_status}'.",
            {"claim_id": claim_id, "from_status": from_status, "to_status": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class InsufficientDataError(RCMError):
    """Raised when an appeal cannot be generated because clinical fields are missing."""

    status_code = 400

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None):
        super().__init__(message, {"missing_fields": missing_fields or []})
        self.missing_fields = missing_fields or []


class EntityNotFoundError(RCMError):
    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found.", {"entity": entity, "id": entity_id})


class ConcurrentModificationError(RCMError):
    """The row changed since it was read. Callers may re-read and retry."""

    status_code = 409
    retryable = True


class ClearinghouseRequestError(RCMError):
    """The clearinghouse refused the request (non-transient 4xx)."""

    status_code = 400

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message, {"http_status": http_status})
        self.http_status = http_status


class ClearinghouseUnavailableError(RCMError):
    """Retry budget exhausted against the clearinghouse."""

    status_code = 503
    retryable = True


class JobAlreadyRunningError(RCMError):
    status_code = 409
    retryable = True

    def __init__(self, job_name: str):
        super().__init__(f"Job '{job_name}' is already running.", {"job_name": job_name})
        self.job_name = job_name
