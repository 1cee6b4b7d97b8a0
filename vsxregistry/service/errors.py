from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for registry service exceptions.

    Each subclass carries the HTTP status and a stable error code so an
    outer API layer can translate failures without inspecting messages:
    - validation_error (400)
    - business_rule_violation (400)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Submitted data failed validation (400)."""
    status_code = 400
    error_code = "validation_error"


class BusinessRuleError(ServiceError):
    """Request is well formed but violates a registry rule (400)."""
    status_code = 400
    error_code = "business_rule_violation"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BusinessRuleError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
]
