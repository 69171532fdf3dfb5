from pydantic import BaseModel, Field, ConfigDict
from uuid import UUID
from datetime import date, datetime
from typing import Optional

from ...config.config import settings
from ...models.db_models import AttendanceMode, Thresholds

class ThresholdsRequest(BaseModel):
    """Range checks happen in the service so out-of-range values surface as InvalidConfig."""
    confidence: float = Field(settings.DEFAULT_CONFIDENCE_THRESHOLD, description="Minimum match confidence, inclusive.")
    liveness: float = Field(settings.DEFAULT_LIVENESS_THRESHOLD, description="Minimum liveness score, inclusive.")
    max_attempts: int = Field(settings.DEFAULT_MAX_ATTEMPTS, description="Verification attempts allowed per student.")

    def to_thresholds(self) -> Thresholds:
        return Thresholds(confidence=self.confidence, liveness=self.liveness, max_attempts=self.max_attempts)

class SessionCreateRequest(BaseModel):
    subject_id: str = Field(..., min_length=1)
    session_name: str = Field(..., min_length=1, max_length=200)
    location: Optional[str] = None
    session_date: Optional[date] = Field(None, description="Defaults to today (UTC).")
    mode: AttendanceMode = AttendanceMode.FACE_SCAN
    thresholds: ThresholdsRequest = Field(default_factory=ThresholdsRequest)

class SessionResponse(BaseModel):
    session_id: UUID
    subject_id: str
    teacher_id: str
    session_name: str
    location: Optional[str] = None
    session_date: date
    start_time: datetime
    end_time: Optional[datetime] = None
    mode: AttendanceMode
    is_active: bool
    thresholds: Thresholds

    model_config = ConfigDict(from_attributes=True)
