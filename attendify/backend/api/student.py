from fastapi import (
    APIRouter, Depends, HTTPException, status,
    Request, File, UploadFile
)
from uuid import UUID

from ..services.errors import ServiceError
from ..services.attendance_service import AttendanceService
from ..services.verification_service import VerificationService
from ..services.enrollment_service import EnrollmentService
from ..models.db_models import User
from .schemas.attendance_record import AttendanceRecordResponse
from .schemas.verification import VerificationResponse, EnrollmentResponse

from .auth import get_current_user
from .dependencies import get_attendance_service, get_verification_service, get_enrollment_service
from .utilities.errors import to_http_exception
from .utilities.limiter import limiter
from .utilities.uploads import read_image

router = APIRouter(prefix="/student", tags=["Student Endpoints"])

def _verify_student_role(user: User):
    """Helper function to verify the current user is a student."""
    if user.role != "student":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This operation is only valid for students."
        )

@router.post(
    "/sessions/{session_id}/verify",
    response_model=VerificationResponse,
    summary="Check in to a session with a face capture"
)
@limiter.limit("10/minute")
async def verify_self(
    request: Request,
    session_id: UUID,
    image: UploadFile = File(...),
    user: User = Depends(get_current_user),
    service: VerificationService = Depends(get_verification_service)
):
    """
    Runs one verification attempt for the calling student.

    The image must be uploaded as `multipart/form-data` (jpeg, png or webp).
    A rejected or unreadable frame still returns 200 with the decision; the
    student may retry until the session's attempt limit is reached.
    """
    _verify_student_role(user)
    image_bytes, content_type = await read_image(image)
    try:
        outcome = await service.verify(session_id, user.user_id, image_bytes, content_type)
    except ServiceError as e:
        raise to_http_exception(e)
    return VerificationResponse.model_validate(outcome.model_dump())

@router.get(
    "/sessions/{session_id}/status",
    response_model=AttendanceRecordResponse,
    summary="Check my attendance status in a specific session"
)
@limiter.limit("20/minute")
async def get_my_attendance_status(
    request: Request,
    session_id: UUID,
    user: User = Depends(get_current_user),
    service: AttendanceService = Depends(get_attendance_service)
):
    _verify_student_role(user)
    record = await service.get_record(session_id, user.user_id)
    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Your attendance record for this session was not found, or the session does not exist."
        )
    return record

@router.post(
    "/enrollment",
    response_model=EnrollmentResponse,
    summary="Set up my face data"
)
@limiter.limit("5/minute")
async def enroll_self(
    request: Request,
    image: UploadFile = File(...),
    user: User = Depends(get_current_user),
    service: EnrollmentService = Depends(get_enrollment_service)
):
    _verify_student_role(user)
    image_bytes, content_type = await read_image(image)
    try:
        return await service.setup_template(user.user_id, image_bytes, content_type, setup_by=user.user_id)
    except ServiceError as e:
        raise to_http_exception(e)

@router.get(
    "/enrollment",
    response_model=EnrollmentResponse,
    summary="Get my face data status"
)
@limiter.limit("20/minute")
async def get_my_enrollment(
    request: Request,
    user: User = Depends(get_current_user),
    service: EnrollmentService = Depends(get_enrollment_service)
):
    _verify_student_role(user)
    try:
        return await service.get_template(user.user_id)
    except ServiceError as e:
        raise to_http_exception(e)
