from pydantic import BaseModel, Field, ConfigDict
from uuid import UUID
from datetime import date, datetime
from typing import Optional

from ...models.db_models import AttendanceMode, AttendanceStatus, VerificationMetadata

class ManualMarkRequest(BaseModel):
    """A teacher marking a student by hand."""
    student_id: str = Field(..., min_length=1)
    status: AttendanceStatus = AttendanceStatus.PRESENT
    notes: Optional[str] = Field(None, max_length=500)

class AmendRecordRequest(BaseModel):
    status: AttendanceStatus
    reason: str = Field(..., min_length=5, description="Why the record is being corrected.")

class AttendanceRecordResponse(BaseModel):
    record_id: UUID
    session_id: UUID
    student_id: str
    subject_id: str
    record_date: date
    status: AttendanceStatus
    check_in_time: Optional[datetime] = Field(None, description="When the student was checked in.")
    mode: AttendanceMode
    verification: Optional[VerificationMetadata] = None
    notes: Optional[str] = None
    parent_notified: bool = False
    amended_by: Optional[str] = None
    amended_at: Optional[datetime] = None
    amend_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
