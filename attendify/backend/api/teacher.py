from fastapi import APIRouter, Depends, HTTPException, status, Request, File, UploadFile
from typing import List, Optional
from uuid import UUID
from datetime import date, datetime, timezone

from ..services.errors import ServiceError
from ..services.session_service import SessionService
from ..services.attendance_service import AttendanceService
from ..services.audit_service import AuditService
from ..services.verification_service import VerificationService
from ..services.enrollment_service import EnrollmentService
from ..models.db_models import User, AttendanceMode, AttendanceSession, VerificationAttempt
from ..models.pipeline_models import SessionAttemptStats
from .schemas.session import SessionCreateRequest, SessionResponse, ThresholdsRequest
from .schemas.attendance_record import AttendanceRecordResponse, ManualMarkRequest, AmendRecordRequest
from .schemas.verification import VerificationResponse, EnrollmentResponse
from .auth import get_current_user
from .dependencies import (
    get_session_service, get_attendance_service, get_audit_service,
    get_verification_service, get_enrollment_service
)
from .utilities.errors import to_http_exception
from .utilities.limiter import limiter
from .utilities.uploads import read_image

router = APIRouter(prefix="/teacher", tags=["Teacher Endpoints"])

# --- Helpers ---

def _verify_teacher_role(user: User):
    if user.role != "teacher":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This operation is only valid for teachers.")

async def _get_owned_session(session_id: UUID, user: User, service: SessionService) -> AttendanceSession:
    try:
        return await service.get_owned_session(session_id, user.user_id)
    except ServiceError as e:
        raise to_http_exception(e)

# === Session lifecycle ===

@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED, summary="Open a new attendance session")
@limiter.limit("10/minute")
async def open_session(request: Request, create_request: SessionCreateRequest, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    _verify_teacher_role(user)
    session_date = create_request.session_date or datetime.now(timezone.utc).date()

    existing = await service.get_active_session(create_request.subject_id, user.user_id, session_date)
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"An active session ({existing.session_id}) already exists for this subject today. Close it first."
        )
    try:
        return await service.open_session(
            teacher_id=user.user_id,
            subject_id=create_request.subject_id,
            session_name=create_request.session_name,
            session_date=session_date,
            mode=create_request.mode,
            thresholds=create_request.thresholds.to_thresholds(),
            location=create_request.location,
        )
    except ServiceError as e:
        raise to_http_exception(e)

@router.post("/sessions/{session_id}/close", response_model=SessionResponse, summary="Close an active session")
@limiter.limit("10/minute")
async def close_session(request: Request, session_id: UUID, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    _verify_teacher_role(user)
    await _get_owned_session(session_id, user, service)
    try:
        return await service.close_session(session_id)
    except ServiceError as e:
        raise to_http_exception(e)

@router.get("/sessions/active", response_model=Optional[SessionResponse], summary="Get the active session for a subject on a date")
@limiter.limit("60/minute")
async def get_active_session(request: Request, subject_id: str, session_date: Optional[date] = None, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    _verify_teacher_role(user)
    return await service.get_active_session(subject_id, user.user_id, session_date or datetime.now(timezone.utc).date())

@router.get("/sessions", response_model=List[SessionResponse], summary="List the teacher's sessions")
@limiter.limit("30/minute")
async def list_sessions(request: Request, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    _verify_teacher_role(user)
    return await service.list_sessions(user.user_id)

@router.put("/sessions/{session_id}/thresholds", response_model=SessionResponse, summary="Retune the thresholds of an active session")
@limiter.limit("10/minute")
async def update_thresholds(request: Request, session_id: UUID, thresholds_request: ThresholdsRequest, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    _verify_teacher_role(user)
    await _get_owned_session(session_id, user, service)
    try:
        return await service.update_thresholds(session_id, thresholds_request.to_thresholds())
    except ServiceError as e:
        raise to_http_exception(e)

# === Attendance records ===

@router.get("/sessions/{session_id}/records", response_model=List[AttendanceRecordResponse], summary="List all records of a session")
@limiter.limit("60/minute")
async def list_records(request: Request, session_id: UUID, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service), attendance_service: AttendanceService = Depends(get_attendance_service)):
    _verify_teacher_role(user)
    await _get_owned_session(session_id, user, service)
    return await attendance_service.list_records(session_id)

@router.post("/sessions/{session_id}/records", response_model=AttendanceRecordResponse, status_code=status.HTTP_201_CREATED, summary="Mark a student manually")
@limiter.limit("200/minute")
async def mark_student(request: Request, session_id: UUID, mark_request: ManualMarkRequest, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service), attendance_service: AttendanceService = Depends(get_attendance_service)):
    _verify_teacher_role(user)
    await _get_owned_session(session_id, user, service)
    try:
        return await attendance_service.commit(
            session_id, mark_request.student_id, mark_request.status, AttendanceMode.MANUAL, notes=mark_request.notes
        )
    except ServiceError as e:
        raise to_http_exception(e)

@router.patch("/sessions/{session_id}/records/{student_id}", response_model=AttendanceRecordResponse, summary="Amend a student's record")
@limiter.limit("60/minute")
async def amend_record(request: Request, session_id: UUID, student_id: str, amend_request: AmendRecordRequest, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service), attendance_service: AttendanceService = Depends(get_attendance_service)):
    _verify_teacher_role(user)
    await _get_owned_session(session_id, user, service)
    try:
        return await attendance_service.amend(session_id, student_id, amend_request.status, amend_request.reason, amended_by=user.user_id)
    except ServiceError as e:
        raise to_http_exception(e)

# === Verification ===

@router.post("/sessions/{session_id}/students/{student_id}/verify", response_model=VerificationResponse, summary="Verify a student from a frame captured on the teacher's device")
@limiter.limit("120/minute")
async def verify_student(request: Request, session_id: UUID, student_id: str, image: UploadFile = File(...), user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service), verification_service: VerificationService = Depends(get_verification_service)):
    _verify_teacher_role(user)
    await _get_owned_session(session_id, user, service)
    image_bytes, content_type = await read_image(image)
    try:
        outcome = await verification_service.verify(session_id, student_id, image_bytes, content_type)
    except ServiceError as e:
        raise to_http_exception(e)
    return VerificationResponse.model_validate(outcome.model_dump())

@router.get("/sessions/{session_id}/attempts", response_model=List[VerificationAttempt], summary="Verification attempts of a session")
@limiter.limit("30/minute")
async def list_attempts(request: Request, session_id: UUID, include_failures: bool = True, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service), audit_service: AuditService = Depends(get_audit_service)):
    _verify_teacher_role(user)
    await _get_owned_session(session_id, user, service)
    return await audit_service.session_attempts(session_id, include_failures=include_failures)

@router.get("/sessions/{session_id}/stats", response_model=SessionAttemptStats, summary="Verification statistics of a session")
@limiter.limit("30/minute")
async def session_stats(request: Request, session_id: UUID, user: User = Depends(get_current_user), service: SessionService = Depends(get_session_service), audit_service: AuditService = Depends(get_audit_service)):
    _verify_teacher_role(user)
    await _get_owned_session(session_id, user, service)
    return await audit_service.stats(session_id)

# === Enrollment on behalf of a student ===

@router.post("/students/{student_id}/enrollment", response_model=EnrollmentResponse, summary="Set up face data for a student")
@limiter.limit("20/minute")
async def enroll_student(request: Request, student_id: str, image: UploadFile = File(...), user: User = Depends(get_current_user), enrollment_service: EnrollmentService = Depends(get_enrollment_service)):
    if user.role not in ("teacher", "admin"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only teachers and admins can enroll other students.")
    image_bytes, content_type = await read_image(image)
    try:
        return await enrollment_service.setup_template(student_id, image_bytes, content_type, setup_by=user.user_id)
    except ServiceError as e:
        raise to_http_exception(e)
