from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from typing import Optional

from ...models.pipeline_models import Decision
from .attendance_record import AttendanceRecordResponse

class VerificationResponse(BaseModel):
    """Decision for one uploaded frame. Rejections are returned, not raised."""
    attempt_id: UUID
    session_id: UUID
    student_id: str
    decision: Decision
    reason: Optional[str] = Field(None, description="low_confidence, low_liveness or the extraction failure.")
    message: Optional[str] = None
    confidence: Optional[float] = None
    liveness_score: Optional[float] = None
    processing_time_ms: float
    record: Optional[AttendanceRecordResponse] = None

class EnrollmentResponse(BaseModel):
    student_id: str
    quality_score: float
    verified: bool
    setup_timestamp: datetime
    setup_by: Optional[str] = None
