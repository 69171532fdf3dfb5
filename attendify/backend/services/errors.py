# --- Service layer exception classes ---
# Routers translate these into HTTP responses. Rejected, extraction_failed and
# timed_out are decisions returned to the caller, not exceptions.

class ServiceError(Exception):
    """General exception class for the service layer."""
    pass

class AuthorizationError(ServiceError):
    """The caller may not act on this resource."""
    pass

class InvalidConfig(ServiceError):
    """Thresholds or attempt limits are out of range."""
    pass

class NotFound(ServiceError):
    """The session does not exist."""
    pass

class RecordNotFound(NotFound):
    pass

class TemplateNotFound(NotFound):
    """The student has no verified enrollment template."""
    pass

class AlreadyClosed(ServiceError):
    pass

class SessionInactive(ServiceError):
    """The session is closed; attempts are rejected, never queued."""
    pass

class ModeMismatch(ServiceError):
    """Face verification was attempted against a manual session."""
    pass

class AttemptsExhausted(ServiceError):
    pass

class AlreadyRecorded(ServiceError):
    """The student already has a record in this session."""
    pass

class DuplicateAttendance(ServiceError):
    """A second commit for the same (student, session) lost the race."""
    pass

class EnrollmentRejected(ServiceError):
    """The enrollment image is not good enough to become a template."""
    pass
