import logging
from typing import Callable, List, Optional
from uuid import UUID
from datetime import date, datetime, timezone

from ..db.db_client import AsyncPostgresClient
from ..db.redis_client import RedisClient
from ..models.db_models import AttendanceSession, AttendanceMode, Thresholds
from .errors import ServiceError, AuthorizationError, InvalidConfig, NotFound, AlreadyClosed

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_thresholds(thresholds: Thresholds) -> None:
    """Raises InvalidConfig unless both thresholds are in [0, 1] and max_attempts >= 1."""
    if not 0.0 <= thresholds.confidence <= 1.0:
        raise InvalidConfig(f"Confidence threshold must be within [0, 1], got {thresholds.confidence}.")
    if not 0.0 <= thresholds.liveness <= 1.0:
        raise InvalidConfig(f"Liveness threshold must be within [0, 1], got {thresholds.liveness}.")
    if thresholds.max_attempts < 1:
        raise InvalidConfig(f"max_attempts must be at least 1, got {thresholds.max_attempts}.")


class SessionService:
    """
    Session Manager: the only writer of attendance sessions.
    """
    def __init__(self, redis_client: RedisClient, db_client: AsyncPostgresClient, clock: Callable[[], datetime] = utc_now):
        self.redis_client = redis_client
        self.db_client = db_client
        self._clock = clock

    async def open_session(
        self,
        teacher_id: str,
        subject_id: str,
        session_name: str,
        session_date: date,
        mode: AttendanceMode,
        thresholds: Thresholds,
        location: Optional[str] = None,
    ) -> AttendanceSession:
        validate_thresholds(thresholds)

        session = AttendanceSession(
            subject_id=subject_id,
            teacher_id=teacher_id,
            session_name=session_name,
            location=location,
            session_date=session_date,
            start_time=self._clock(),
            mode=mode,
            is_active=True,
            thresholds=thresholds,
        )
        try:
            await self.db_client.insert_session(session)
        except Exception as e:
            logger.error(f"Error saving new session for teacher '{teacher_id}'.", exc_info=True)
            raise ServiceError("A server error occurred while opening the session.") from e

        logger.info(f"Session {session.session_id} opened by '{teacher_id}' for subject '{subject_id}' ({mode.value}).")
        return session

    async def close_session(self, session_id: UUID) -> AttendanceSession:
        closed = await self.db_client.close_session(session_id, self._clock())
        if closed is None:
            # Nothing was updated: tell an unknown session from a closed one.
            existing = await self.db_client.get_session(session_id)
            if existing is None:
                raise NotFound(f"Session {session_id} not found.")
            logger.warning(f"Attempt to close session {session_id}, which is already closed.")
            raise AlreadyClosed(f"Session {session_id} is already closed.")

        logger.info(f"Session {session_id} closed at {closed.end_time.isoformat()}.")
        try:
            await self.redis_client.clear_attempts(session_id)
        except Exception:
            # Counters expire on their own; a failed cleanup only delays that.
            logger.warning(f"Could not clear attempt counters of session {session_id}.", exc_info=True)
        return closed

    async def get_active_session(self, subject_id: str, teacher_id: str, session_date: date) -> Optional[AttendanceSession]:
        return await self.db_client.get_active_session(subject_id, teacher_id, session_date)

    async def get_session(self, session_id: UUID) -> AttendanceSession:
        session = await self.db_client.get_session(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found.")
        return session

    async def get_owned_session(self, session_id: UUID, teacher_id: str) -> AttendanceSession:
        session = await self.db_client.get_session(session_id)
        if session is None or session.teacher_id != teacher_id:
            raise AuthorizationError("Session not found or you are not authorized to access it.")
        return session

    async def list_sessions(self, teacher_id: str) -> List[AttendanceSession]:
        return await self.db_client.list_sessions(teacher_id)

    async def update_thresholds(self, session_id: UUID, thresholds: Thresholds) -> AttendanceSession:
        validate_thresholds(thresholds)
        updated = await self.db_client.update_session_thresholds(session_id, thresholds)
        if updated is None:
            if await self.db_client.get_session(session_id) is None:
                raise NotFound(f"Session {session_id} not found.")
            raise AlreadyClosed(f"Session {session_id} is closed; its thresholds can no longer change.")
        logger.info(
            f"Session {session_id} thresholds set to confidence={thresholds.confidence}, "
            f"liveness={thresholds.liveness}, max_attempts={thresholds.max_attempts}."
        )
        return updated
