# sitenotify/core/dispatch/errors.py
"""
Typed errors for the batch dispatch engine.

Request-level errors carry the HTTP status code they map to.  The transport
layer catches ``DispatchError`` subtypes and converts them to
``HTTPException`` without embedding business logic in the route handlers.

Channel errors never reach the API caller: the worker pool records them as
per-recipient failures on the job.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for request-level dispatch errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(DispatchError):
    """Invalid batch request or recipient (400)."""

    status_code = 400


class NotFoundError(DispatchError):
    """Unknown job id (404)."""

    status_code = 404


class ConflictError(DispatchError):
    """Operation not allowed in the job's current state (409)."""

    status_code = 409


class InvalidTransitionError(DispatchError):
    """Attempted status change the job state machine does not allow."""


class RecipientNotFound(Exception):
    """Recipient directory could not resolve a recipient reference."""


class ChannelError(Exception):
    """Transport or provider failure for a single recipient.

    Attributes:
        status: HTTP/SMTP status code when known (0 for connection-level errors).
    """

    def __init__(self, message: str, *, status: int = 0):
        self.status = status
        super().__init__(message)


class SystemicError(Exception):
    """Channel configuration or credential failure detected before dispatch."""
