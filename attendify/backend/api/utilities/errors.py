from fastapi import HTTPException, status

from ...services.errors import (
    ServiceError, AuthorizationError, InvalidConfig, NotFound, AlreadyClosed, SessionInactive,
    ModeMismatch, AttemptsExhausted, AlreadyRecorded, DuplicateAttendance, EnrollmentRejected
)

# Most specific first: RecordNotFound and TemplateNotFound resolve through NotFound.
_STATUS_BY_ERROR = [
    (AuthorizationError, status.HTTP_404_NOT_FOUND),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidConfig, status.HTTP_400_BAD_REQUEST),
    (EnrollmentRejected, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (AlreadyClosed, status.HTTP_409_CONFLICT),
    (SessionInactive, status.HTTP_409_CONFLICT),
    (ModeMismatch, status.HTTP_409_CONFLICT),
    (AttemptsExhausted, status.HTTP_409_CONFLICT),
    (AlreadyRecorded, status.HTTP_409_CONFLICT),
    (DuplicateAttendance, status.HTTP_409_CONFLICT),
]

def to_http_exception(error: ServiceError) -> HTTPException:
    """Translates a service-layer error into the HTTP error returned to the client."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
