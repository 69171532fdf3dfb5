from enum import Enum
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from .db_models import AttendanceRecord, AttendanceStatus


class AttemptState(str, Enum):
    RECEIVED = "received"
    EXTRACTING = "extracting"
    MATCHING = "matching"
    DECIDED = "decided"


class Decision(str, Enum):
    MATCHED = "matched"
    REJECTED = "rejected"
    EXTRACTION_FAILED = "extraction_failed"
    TIMED_OUT = "timed_out"


class RejectionReason(str, Enum):
    LOW_CONFIDENCE = "low_confidence"
    LOW_LIVENESS = "low_liveness"


class ExtractionFailure(str, Enum):
    NO_FACE = "no_face"
    MULTIPLE_FACES = "multiple_faces"
    POOR_QUALITY = "poor_quality"
    INVALID_IMAGE = "invalid_image"
    INVALID_DESCRIPTOR = "invalid_descriptor"
    UNAVAILABLE = "unavailable"


class ExtractedDescriptor(BaseModel):
    """Response body of the descriptor extractor's /extract endpoint."""
    descriptor: List[float]
    quality: float = Field(..., ge=0.0, le=1.0)
    liveness: float = Field(..., ge=0.0, le=1.0)


class MatchScore(BaseModel):
    confidence: float
    liveness_score: float
    distance: float


class VerificationOutcome(BaseModel):
    """What the pipeline hands back to the caller for a decided attempt."""
    attempt_id: UUID
    session_id: UUID
    student_id: str
    decision: Decision
    reason: Optional[str] = None
    message: Optional[str] = None
    confidence: Optional[float] = None
    liveness_score: Optional[float] = None
    quality_score: Optional[float] = None
    processing_time_ms: float
    record: Optional[AttendanceRecord] = None


class AttendanceCommitted(BaseModel):
    """Event emitted by the recorder after a record is durably written."""
    record_id: UUID
    student_id: str
    session_id: UUID
    teacher_id: str
    subject_id: str
    session_name: str
    status: AttendanceStatus
    timestamp: datetime


class DeliveryResult(BaseModel):
    delivered: bool
    provider_id: Optional[str] = None


class SessionAttemptStats(BaseModel):
    session_id: UUID
    total_attempts: int
    matched_attempts: int
    success_rate: float
    average_confidence: Optional[float] = None
    average_liveness: Optional[float] = None
    outcomes: Dict[str, int] = Field(default_factory=dict)
