from enum import Enum
from pydantic import BaseModel, Field
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4


class AttendanceMode(str, Enum):
    MANUAL = "manual"
    FACE_SCAN = "face_scan"


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    ON_LEAVE = "on_leave"


class AttemptOutcome(str, Enum):
    """Every way a verification attempt can end, as written to the audit log."""
    MATCHED = "matched"
    REJECTED = "rejected"
    EXTRACTION_FAILED = "extraction_failed"
    TIMED_OUT = "timed_out"
    SESSION_INACTIVE = "session_inactive"
    MODE_MISMATCH = "mode_mismatch"
    ALREADY_RECORDED = "already_recorded"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    NO_TEMPLATE = "no_template"
    DUPLICATE = "duplicate"
    CANCELLED = "cancelled"
    COMMIT_FAILED = "commit_failed"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Thresholds(BaseModel):
    """Per-session decision thresholds. Both comparisons are inclusive."""
    confidence: float
    liveness: float
    max_attempts: int


class User(BaseModel):
    """
    Read-only view of a profile from the external user store, mapping to the 'users' table.
    """
    user_id: str = Field(..., description="Unique identifier of the user, acting as the Primary Key")
    full_name: str
    role: str = Field(..., description="Can be admin, teacher or student")
    email: Optional[str] = None
    parent_email: Optional[str] = None


class AttendanceSession(BaseModel):
    """
    An attendance-taking session, mapping to the 'attendance_sessions' table.
    Only the Session Manager mutates it: to close it or to retune its thresholds.
    """
    session_id: UUID = Field(default_factory=uuid4)
    subject_id: str
    teacher_id: str = Field(..., description="FK linking to the teacher who opened the session")
    session_name: str
    location: Optional[str] = None
    session_date: date
    start_time: datetime
    end_time: Optional[datetime] = None
    mode: AttendanceMode
    is_active: bool = True
    thresholds: Thresholds


class EnrollmentTemplate(BaseModel):
    """
    The stored biometric reference of one student, mapping to the 'enrollment_templates' table.
    """
    student_id: str
    descriptor: List[float]
    quality_score: float
    verified: bool = False
    setup_timestamp: datetime
    setup_by: Optional[str] = None


class VerificationMetadata(BaseModel):
    confidence: float
    liveness_score: float
    quality_score: Optional[float] = None
    processing_time_ms: float


class AttendanceRecord(BaseModel):
    """
    A single student's attendance in a session, mapping to the 'attendance_records' table.
    At most one exists per (student_id, session_id).
    """
    record_id: UUID = Field(default_factory=uuid4)
    student_id: str
    teacher_id: str
    subject_id: str
    session_id: UUID = Field(..., description="FK linking to the attendance session")
    record_date: date
    status: AttendanceStatus
    check_in_time: Optional[datetime] = None
    mode: AttendanceMode
    verification: Optional[VerificationMetadata] = None
    notes: Optional[str] = None
    parent_notified: bool = False
    parent_notified_at: Optional[datetime] = None
    amended_by: Optional[str] = None
    amended_at: Optional[datetime] = None
    amend_reason: Optional[str] = None


class VerificationAttempt(BaseModel):
    """
    One audited verification attempt, mapping to the 'verification_attempts' table.
    The image itself is never stored, only its sha256 digest.
    """
    attempt_id: UUID = Field(default_factory=uuid4)
    session_id: UUID
    student_id: Optional[str] = None
    captured_image_ref: Optional[str] = None
    content_type: Optional[str] = None
    descriptor_length: Optional[int] = None
    confidence: Optional[float] = None
    liveness_score: Optional[float] = None
    quality_score: Optional[float] = None
    processing_time_ms: float = 0.0
    outcome: AttemptOutcome
    reason: Optional[str] = None
    message: Optional[str] = None
    thresholds: Optional[Thresholds] = None
    timestamp: datetime


class Notification(BaseModel):
    """An in-app notification, mapping to the 'notifications' table."""
    notification_id: UUID = Field(default_factory=uuid4)
    user_id: str
    type: str
    title: str
    message: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    timestamp: datetime
    related_id: Optional[str] = None


class NotificationDelivery(BaseModel):
    """
    One call to the external notifier, mapping to the 'notification_deliveries' table.
    Failed deliveries are retried by the scheduler.
    """
    delivery_id: UUID = Field(default_factory=uuid4)
    user_id: str
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    related_record_id: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime
