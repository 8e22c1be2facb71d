"""Error taxonomy shared by the agency adapters and the store layer."""

from typing import Optional


class AdapterError(Exception):
    """Failure while answering an arrivals request.

    Every subclass carries an explicit ``kind`` and the HTTP status the API
    renders it with, so no failure is ever reported inside a 2xx response.
    """

    kind = "upstream_error"
    status_code = 502

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.source = source


class BadRequestError(AdapterError):
    kind = "bad_request"
    status_code = 400


class UnknownAgencyError(AdapterError):
    kind = "unknown_agency"
    status_code = 404


class NotConfiguredError(AdapterError):
    kind = "not_configured"
    status_code = 503


class UpstreamHTTPError(AdapterError):
    kind = "upstream_http"
    status_code = 502

    def __init__(self, message: str, source: Optional[str] = None, upstream_status: Optional[int] = None):
        super().__init__(message, source)
        self.upstream_status = upstream_status


class UpstreamTimeoutError(AdapterError):
    kind = "upstream_timeout"
    status_code = 504


class UpstreamParseError(AdapterError):
    kind = "upstream_parse"
    status_code = 502


# --- Store errors ---


class StoreError(Exception):
    """A store rule was violated; ``kind`` and ``status_code`` drive the HTTP error."""

    kind = "bad_request"
    status_code = 400


class NotFoundError(StoreError):
    kind = "not_found"
    status_code = 404


class PermissionDeniedError(StoreError):
    kind = "permission_denied"
    status_code = 403


class RideFullError(StoreError):
    kind = "ride_full"
    status_code = 409


class AlreadyMemberError(StoreError):
    kind = "already_member"
    status_code = 409


class InvalidTransitionError(StoreError):
    kind = "invalid_transition"
    status_code = 409
