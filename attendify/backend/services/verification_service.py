import asyncio
import hashlib
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple
from uuid import UUID, uuid4
from datetime import datetime

from ..config.config import settings
from ..db.db_client import AsyncPostgresClient
from ..db.redis_client import RedisClient
from ..models.db_models import (
    AttendanceSession, AttendanceMode, AttendanceRecord, AttemptOutcome, EnrollmentTemplate,
    Thresholds, VerificationAttempt, VerificationMetadata
)
from ..models.pipeline_models import (
    AttemptState, Decision, RejectionReason, ExtractionFailure, MatchScore, VerificationOutcome
)
from ..tools.descriptor_extractor import extract_descriptor, ExtractionError, ExtractionTimeout
from ..tools.match_engine import score, MatchError
from .attendance_service import AttendanceService
from .audit_service import AuditService
from .session_service import SessionService, utc_now
from .errors import (
    ServiceError, SessionInactive, ModeMismatch, AlreadyRecorded, AttemptsExhausted, TemplateNotFound,
    DuplicateAttendance
)

logger = logging.getLogger(__name__)


class InvalidTransition(RuntimeError):
    pass


_TRANSITIONS = {
    AttemptState.RECEIVED: {AttemptState.EXTRACTING, AttemptState.DECIDED},
    AttemptState.EXTRACTING: {AttemptState.MATCHING, AttemptState.DECIDED},
    AttemptState.MATCHING: {AttemptState.DECIDED},
    AttemptState.DECIDED: set(),
}

# Refusals raised before the extractor is called, and how each is audited.
_EARLY_OUTCOMES = {
    SessionInactive: AttemptOutcome.SESSION_INACTIVE,
    ModeMismatch: AttemptOutcome.MODE_MISMATCH,
    AlreadyRecorded: AttemptOutcome.ALREADY_RECORDED,
    AttemptsExhausted: AttemptOutcome.ATTEMPTS_EXHAUSTED,
    TemplateNotFound: AttemptOutcome.NO_TEMPLATE,
}


class AttemptStateMachine:
    """
    Tracks one attempt through Received -> Extracting -> Matching -> Decided.

    An attempt may be decided early from any state, but can never move
    backwards or jump from Received straight to Matching.
    """
    def __init__(self, attempt_id: UUID, timer: Callable[[], float] = time.perf_counter):
        self.attempt_id = attempt_id
        self.state = AttemptState.RECEIVED
        self.history = [AttemptState.RECEIVED]
        self._timer = timer
        self._started = timer()

    @property
    def elapsed_ms(self) -> float:
        return (self._timer() - self._started) * 1000.0

    def advance(self, next_state: AttemptState) -> None:
        if next_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Attempt {self.attempt_id}: transition {self.state.value} -> {next_state.value} is not allowed."
            )
        logger.info(
            f"Attempt {self.attempt_id}: {self.state.value} -> {next_state.value} ({self.elapsed_ms:.1f} ms)."
        )
        self.state = next_state
        self.history.append(next_state)


def evaluate_thresholds(match: MatchScore, thresholds: Thresholds) -> Tuple[Decision, Optional[RejectionReason], Optional[str]]:
    """
    Applies the session thresholds. Equality passes.

    On rejection the reason is the first failing check (confidence before
    liveness) and the message lists every failing check.
    """
    failures = []
    if match.confidence < thresholds.confidence:
        failures.append((
            RejectionReason.LOW_CONFIDENCE,
            f"Confidence {match.confidence:.1%} < {thresholds.confidence:.1%}"
        ))
    if match.liveness_score < thresholds.liveness:
        failures.append((
            RejectionReason.LOW_LIVENESS,
            f"Liveness {match.liveness_score:.1%} < {thresholds.liveness:.1%}"
        ))
    if not failures:
        return Decision.MATCHED, None, None
    return Decision.REJECTED, failures[0][0], ", ".join(message for _, message in failures)


class VerificationService:
    """
    Verification Pipeline: turns one captured frame into a decision for the
    student claiming it, and commits attendance when the decision is Matched.
    Every attempt ends up in the audit log, whatever its outcome.
    """
    def __init__(
        self,
        redis_client: RedisClient,
        db_client: AsyncPostgresClient,
        session_service: SessionService,
        attendance_service: AttendanceService,
        audit_service: AuditService,
        extractor=extract_descriptor,
        matcher=score,
        clock: Callable[[], datetime] = utc_now,
        extraction_timeout: Optional[float] = None,
        match_timeout: Optional[float] = None,
    ):
        self.redis_client = redis_client
        self.db_client = db_client
        self.session_service = session_service
        self.attendance_service = attendance_service
        self.audit_service = audit_service
        self._extractor = extractor
        self._matcher = matcher
        self._clock = clock
        self._extraction_timeout = extraction_timeout if extraction_timeout is not None else settings.EXTRACTION_TIMEOUT_SECONDS
        self._match_timeout = match_timeout if match_timeout is not None else settings.MATCH_TIMEOUT_SECONDS

    async def verify(self, session_id: UUID, student_id: str, image_bytes: bytes, content_type: str) -> VerificationOutcome:
        machine = AttemptStateMachine(uuid4())
        # NotFound propagates unaudited: an attempt row must reference a real session.
        session = await self.session_service.get_session(session_id)

        trail: Dict[str, Any] = {
            "attempt_id": machine.attempt_id,
            "session_id": session_id,
            "student_id": student_id,
            "captured_image_ref": hashlib.sha256(image_bytes).hexdigest(),
            "content_type": content_type,
            "thresholds": session.thresholds,
            "timestamp": self._clock(),
        }

        try:
            template = await self._admit(session, student_id)
        except tuple(_EARLY_OUTCOMES) as e:
            machine.advance(AttemptState.DECIDED)
            await self._audit(trail, _EARLY_OUTCOMES[type(e)], machine.elapsed_ms, reason=_EARLY_OUTCOMES[type(e)].value, message=str(e))
            logger.info(f"Attempt {machine.attempt_id} for '{student_id}' refused before extraction: {e}")
            raise

        try:
            return await self._run(machine, session, template, student_id, image_bytes, content_type, trail)
        except asyncio.CancelledError:
            if machine.state != AttemptState.DECIDED:
                machine.advance(AttemptState.DECIDED)
                await self._audit(trail, AttemptOutcome.CANCELLED, machine.elapsed_ms, reason="cancelled")
                logger.warning(f"Attempt {machine.attempt_id} for '{student_id}' was cancelled in flight.")
            raise

    async def _admit(self, session: AttendanceSession, student_id: str) -> EnrollmentTemplate:
        """Checks that can refuse an attempt without calling the extractor, then reserves an attempt slot."""
        if not session.is_active:
            raise SessionInactive(f"Session {session.session_id} is closed.")
        if session.mode != AttendanceMode.FACE_SCAN:
            raise ModeMismatch(f"Session {session.session_id} takes manual attendance only.")
        if await self.db_client.get_record(session.session_id, student_id) is not None:
            raise AlreadyRecorded(f"Attendance of '{student_id}' is already recorded in this session.")

        max_attempts = session.thresholds.max_attempts
        if await self.redis_client.get_attempt_count(session.session_id, student_id) >= max_attempts:
            raise AttemptsExhausted(f"All {max_attempts} verification attempts have been used.")

        template = await self.db_client.get_template(student_id)
        if template is None or not template.verified:
            raise TemplateNotFound(f"'{student_id}' has no verified face enrollment.")

        slot = await self.redis_client.reserve_attempt(
            session.session_id, student_id, max_attempts, settings.ATTEMPT_COUNTER_TTL_SECONDS
        )
        if slot is None:
            raise AttemptsExhausted(f"All {max_attempts} verification attempts have been used.")
        logger.info(f"Attempt {slot}/{max_attempts} reserved for '{student_id}' in session {session.session_id}.")
        return template

    async def _run(
        self,
        machine: AttemptStateMachine,
        session: AttendanceSession,
        template: EnrollmentTemplate,
        student_id: str,
        image_bytes: bytes,
        content_type: str,
        trail: Dict[str, Any],
    ) -> VerificationOutcome:
        # --- Extracting ---
        machine.advance(AttemptState.EXTRACTING)
        try:
            extracted = await asyncio.wait_for(
                self._extractor(image_bytes, content_type), timeout=self._extraction_timeout
            )
        except (asyncio.TimeoutError, ExtractionTimeout):
            logger.warning(f"Attempt {machine.attempt_id}: extraction timed out after {self._extraction_timeout}s.")
            return await self._decide(
                machine, trail, Decision.TIMED_OUT,
                reason="extraction_timeout", message="The face service did not answer in time."
            )
        except ExtractionError as e:
            return await self._decide(machine, trail, Decision.EXTRACTION_FAILED, reason=e.reason.value, message=str(e))

        trail.update(
            descriptor_length=len(extracted.descriptor),
            quality_score=extracted.quality,
        )
        if extracted.quality < settings.MIN_FACE_QUALITY:
            return await self._decide(
                machine, trail, Decision.EXTRACTION_FAILED,
                reason=ExtractionFailure.POOR_QUALITY.value,
                message=f"Face quality {extracted.quality:.2f} is below the minimum of {settings.MIN_FACE_QUALITY:.2f}."
            )

        # --- Matching ---
        machine.advance(AttemptState.MATCHING)
        try:
            match = await asyncio.wait_for(
                asyncio.to_thread(self._matcher, extracted.descriptor, template.descriptor, extracted.liveness),
                timeout=self._match_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Attempt {machine.attempt_id}: matching timed out after {self._match_timeout}s.")
            return await self._decide(
                machine, trail, Decision.TIMED_OUT,
                reason="match_timeout", message="Matching did not finish in time."
            )
        except MatchError as e:
            logger.error(f"Attempt {machine.attempt_id}: descriptors could not be compared: {e}")
            return await self._decide(
                machine, trail, Decision.EXTRACTION_FAILED,
                reason=ExtractionFailure.INVALID_DESCRIPTOR.value, message=str(e)
            )

        trail.update(confidence=match.confidence, liveness_score=match.liveness_score)
        decision, reason, message = evaluate_thresholds(match, session.thresholds)
        if decision != Decision.MATCHED:
            return await self._decide(machine, trail, decision, reason=reason.value, message=message)

        # --- Matched: commit ---
        verification = VerificationMetadata(
            confidence=match.confidence,
            liveness_score=match.liveness_score,
            quality_score=extracted.quality,
            processing_time_ms=machine.elapsed_ms,
        )
        try:
            record = await self.attendance_service.commit(
                session.session_id, student_id, Decision.MATCHED, AttendanceMode.FACE_SCAN,
                verification=verification
            )
        except (DuplicateAttendance, SessionInactive) as e:
            outcome = AttemptOutcome.DUPLICATE if isinstance(e, DuplicateAttendance) else AttemptOutcome.SESSION_INACTIVE
            machine.advance(AttemptState.DECIDED)
            await self._audit(trail, outcome, machine.elapsed_ms, reason=outcome.value, message=str(e))
            raise
        except ServiceError as e:
            # The match stands but no record was written; the attempt slot stays spent.
            machine.advance(AttemptState.DECIDED)
            outcome = AttemptOutcome.COMMIT_FAILED
            await self._audit(trail, outcome, machine.elapsed_ms, reason=outcome.value, message=str(e))
            logger.error(f"Attempt {machine.attempt_id} for '{student_id}' matched but could not be committed: {e}")
            raise

        return await self._decide(machine, trail, Decision.MATCHED, record=record)

    async def _decide(
        self,
        machine: AttemptStateMachine,
        trail: Dict[str, Any],
        decision: Decision,
        reason: Optional[str] = None,
        message: Optional[str] = None,
        record: Optional[AttendanceRecord] = None,
    ) -> VerificationOutcome:
        if decision == Decision.MATCHED and machine.state != AttemptState.MATCHING:
            raise InvalidTransition(f"Attempt {machine.attempt_id} cannot be matched from state {machine.state.value}.")
        machine.advance(AttemptState.DECIDED)
        processing_time_ms = machine.elapsed_ms

        await self._audit(trail, AttemptOutcome(decision.value), processing_time_ms, reason=reason, message=message)
        logger.info(
            f"Attempt {machine.attempt_id} for '{trail['student_id']}' in session {trail['session_id']}: "
            f"{decision.value}{f' ({reason})' if reason else ''}."
        )
        return VerificationOutcome(
            attempt_id=machine.attempt_id,
            session_id=trail["session_id"],
            student_id=trail["student_id"],
            decision=decision,
            reason=reason,
            message=message,
            confidence=trail.get("confidence"),
            liveness_score=trail.get("liveness_score"),
            quality_score=trail.get("quality_score"),
            processing_time_ms=processing_time_ms,
            record=record,
        )

    async def _audit(
        self,
        trail: Dict[str, Any],
        outcome: AttemptOutcome,
        processing_time_ms: float,
        reason: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        attempt = VerificationAttempt(
            **trail,
            outcome=outcome,
            reason=reason,
            message=message,
            processing_time_ms=processing_time_ms,
        )
        await self.audit_service.record(attempt)
