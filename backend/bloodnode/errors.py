"""
Error taxonomy for the emergency donor subsystem.

Every error carries the HTTP status it maps to and a short machine-readable
``code``.  Services raise these; the API layer renders them through the
handlers registered in ``bloodnode.api.errors``.
"""

from __future__ import annotations


class BloodNodeError(Exception):
    """Base application error."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()


# ---------------------------------------------------------------------------
# 400: bad input shape or range, never retried
# ---------------------------------------------------------------------------

class ValidationError(BloodNodeError):
    """Invalid input."""

    status_code = 400
    code = "validation_error"


class InvalidCoordinate(ValidationError):
    """Latitude or longitude out of range."""

    code = "invalid_coordinate"


class InvalidGeohash(ValidationError):
    """Malformed geohash string."""

    code = "invalid_geohash"


class IncompatibleBloodType(ValidationError):
    """Donor blood type cannot donate to the requested type."""

    code = "incompatible_blood_type"


# ---------------------------------------------------------------------------
# 404: absent entity
# ---------------------------------------------------------------------------

class NotFoundError(BloodNodeError):
    """Resource not found."""

    status_code = 404
    code = "not_found"


class AlertNotFound(NotFoundError):
    """Emergency alert not found."""

    code = "alert_not_found"


class ResponseNotFound(NotFoundError):
    """Emergency response not found."""

    code = "response_not_found"


class DonorNotFound(NotFoundError):
    """Donor profile not found."""

    code = "donor_not_found"


# ---------------------------------------------------------------------------
# 409: state conflicts; callers may retry with fresh state
# ---------------------------------------------------------------------------

class ConflictError(BloodNodeError):
    """Conflicting state."""

    status_code = 409
    code = "conflict"


class DuplicateResponse(ConflictError):
    """Donor has already responded to this alert."""

    code = "duplicate_response"


class AlertNotActive(ConflictError):
    """Emergency alert is no longer active."""

    code = "alert_not_active"


class InvalidTransition(ConflictError):
    """Illegal alert status transition."""

    code = "invalid_transition"


class InvalidResponseTransition(ConflictError):
    """Illegal response status transition."""

    code = "invalid_response_transition"


# ---------------------------------------------------------------------------
# 503: collaborator unreachable, retryable
# ---------------------------------------------------------------------------

class DependencyError(BloodNodeError):
    """Upstream dependency unavailable."""

    status_code = 503
    code = "dependency_error"


class DirectoryUnavailable(DependencyError):
    """Donor directory query failed."""

    code = "directory_unavailable"
