"""
Error taxonomy shared by the stores, the lifecycle service and the access gate.

Each error carries the HTTP status it maps to; the app registers a single handler
that logs the failure and returns ``{"detail": ...}`` to the client.
"""
from typing import Optional


class ServiceError(Exception):
    status_code = 500
    default_detail = "Server error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class BadRequest(ServiceError):
    status_code = 400
    default_detail = "Bad request"


class Unauthorized(ServiceError):
    status_code = 401
    default_detail = "Not authenticated"


class Forbidden(ServiceError):
    status_code = 403
    default_detail = "Forbidden"


class NotFound(ServiceError):
    status_code = 404
    default_detail = "Not found"


class Conflict(ServiceError):
    status_code = 409
    default_detail = "Already exists"


class DeliveryError(ServiceError):
    # Raised by the mail transport; caught by the dispatcher, never sent to a client
    status_code = 502
    default_detail = "Notification delivery failed"


class Internal(ServiceError):
    status_code = 500
    default_detail = "Server error"
