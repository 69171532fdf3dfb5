import logging
from collections import Counter
from typing import List
from uuid import UUID

from ..db.db_client import AsyncPostgresClient
from ..logging.logging_config import AUDIT_LOGGER_NAME
from ..models.db_models import VerificationAttempt, AttemptOutcome
from ..models.pipeline_models import SessionAttemptStats

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)


class AuditService:
    """
    Append-only trail of verification attempts, used for dispute resolution
    and threshold tuning.
    """
    def __init__(self, db_client: AsyncPostgresClient):
        self.db_client = db_client

    async def record(self, attempt: VerificationAttempt) -> None:
        """
        Appends one attempt. Never raises: a storage failure is logged together
        with the full attempt so the entry survives in the log files.
        """
        audit_logger.info(attempt.model_dump_json(exclude_none=True))
        try:
            await self.db_client.add_attempt(attempt)
        except Exception:
            logger.error(
                f"Failed to persist verification attempt {attempt.attempt_id}: {attempt.model_dump_json()}",
                exc_info=True
            )

    async def session_attempts(self, session_id: UUID, include_failures: bool = True) -> List[VerificationAttempt]:
        return await self.db_client.get_attempts(session_id, include_failures=include_failures)

    async def stats(self, session_id: UUID) -> SessionAttemptStats:
        attempts = await self.db_client.get_attempts(session_id, include_failures=True)
        outcomes = Counter(attempt.outcome.value for attempt in attempts)
        matched = outcomes.get(AttemptOutcome.MATCHED.value, 0)

        # Only attempts that reached the match engine carry scores.
        confidences = [a.confidence for a in attempts if a.confidence is not None]
        liveness_scores = [a.liveness_score for a in attempts if a.liveness_score is not None]

        return SessionAttemptStats(
            session_id=session_id,
            total_attempts=len(attempts),
            matched_attempts=matched,
            success_rate=matched / len(attempts) if attempts else 0.0,
            average_confidence=sum(confidences) / len(confidences) if confidences else None,
            average_liveness=sum(liveness_scores) / len(liveness_scores) if liveness_scores else None,
            outcomes=dict(outcomes),
        )
