"""Exception taxonomy shared by the services and the HTTP layer."""
from __future__ import annotations

from typing import Any, Dict


class GroupBuyError(Exception):
    """Base class for errors that map onto a client-facing response."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message}}


class ValidationError(GroupBuyError):
    """400-level input problem."""

    status_code = 400
    code = "validation_error"


class WebhookSignatureError(ValidationError):
    code = "invalid_signature"


class AuthorizationError(GroupBuyError):
    """Actor does not own the resource it is mutating."""

    status_code = 403
    code = "forbidden"


class NotFoundError(GroupBuyError):
    status_code = 404
    code = "not_found"


class ConflictError(GroupBuyError):
    """409-level business rule conflict (e.g., a second open checkout)."""

    status_code = 409
    code = "conflict"


class DuplicateRequestError(ConflictError):
    code = "duplicate_request"


class ExternalServiceError(GroupBuyError):
    """Payment processor unreachable or returned an error."""

    status_code = 502
    code = "external_service_error"


class AuthenticationError(GroupBuyError):
    """No user id in the Flask session."""

    status_code = 401
    code = "not_authenticated"
