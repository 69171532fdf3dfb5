import asyncio
import logging
from typing import Callable, List, Optional, Set, Union
from uuid import UUID
from datetime import datetime

from ..db.db_client import AsyncPostgresClient, CommitResult
from ..models.db_models import (
    AttendanceRecord, AttendanceStatus, AttendanceMode, AttendanceSession, VerificationMetadata
)
from ..models.pipeline_models import AttendanceCommitted, Decision
from .errors import (
    ServiceError, InvalidConfig, NotFound, RecordNotFound, SessionInactive, DuplicateAttendance
)
from .session_service import utc_now

logger = logging.getLogger(__name__)

# Strong references to in-flight dispatch tasks; asyncio only keeps weak ones.
_background_tasks: Set[asyncio.Task] = set()


async def wait_for_dispatches() -> None:
    """Waits until every scheduled notification dispatch has finished."""
    if _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


class AttendanceService:
    """
    Attendance Recorder: the only writer of attendance records.

    A record is committed at most once per (student, session). After the
    commit, notifications are handed to the dispatcher as a background task;
    whatever happens there, the record stays committed.
    """
    def __init__(
        self,
        db_client: AsyncPostgresClient,
        dispatcher=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_client = db_client
        self.dispatcher = dispatcher
        self._clock = clock

    async def commit(
        self,
        session_id: UUID,
        student_id: str,
        outcome: Union[Decision, AttendanceStatus],
        mode: AttendanceMode,
        verification: Optional[VerificationMetadata] = None,
        notes: Optional[str] = None,
    ) -> AttendanceRecord:
        """
        Writes the single record of a student in a session.

        A face-scan decision must be Matched and becomes 'present'; a manual
        decision carries its own status. Raises NotFound, SessionInactive or
        DuplicateAttendance.
        """
        if isinstance(outcome, Decision):
            if outcome != Decision.MATCHED:
                raise InvalidConfig(f"Only a matched decision can be committed, got '{outcome.value}'.")
            status = AttendanceStatus.PRESENT
        else:
            status = outcome

        session = await self.db_client.get_session(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found.")
        if not session.is_active:
            raise SessionInactive(f"Session {session_id} is closed.")

        now = self._clock()
        record = AttendanceRecord(
            student_id=student_id,
            teacher_id=session.teacher_id,
            subject_id=session.subject_id,
            session_id=session_id,
            record_date=session.session_date,
            status=status,
            check_in_time=now if status in (AttendanceStatus.PRESENT, AttendanceStatus.LATE) else None,
            mode=mode,
            verification=verification,
            notes=notes,
        )

        try:
            result, committed = await self.db_client.commit_record(record)
        except Exception as e:
            logger.error(f"Error committing attendance of '{student_id}' in session {session_id}.", exc_info=True)
            raise ServiceError("A server error occurred while recording attendance.") from e

        if result == CommitResult.DUPLICATE:
            logger.warning(f"Duplicate attendance commit for '{student_id}' in session {session_id}.")
            raise DuplicateAttendance(f"Attendance of '{student_id}' is already recorded in session {session_id}.")
        if result == CommitResult.INACTIVE:
            raise SessionInactive(f"Session {session_id} was closed before the record could be written.")
        if result == CommitResult.NOT_FOUND:
            raise NotFound(f"Session {session_id} not found.")

        logger.info(f"Attendance of '{student_id}' recorded as '{committed.status.value}' in session {session_id} ({mode.value}).")
        self._dispatch(session, committed)
        return committed

    def _dispatch(self, session: AttendanceSession, record: AttendanceRecord) -> None:
        if self.dispatcher is None:
            return
        event = AttendanceCommitted(
            record_id=record.record_id,
            student_id=record.student_id,
            session_id=record.session_id,
            teacher_id=record.teacher_id,
            subject_id=record.subject_id,
            session_name=session.session_name,
            status=record.status,
            timestamp=self._clock(),
        )
        task = asyncio.create_task(self._run_dispatch(event))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    async def _run_dispatch(self, event: AttendanceCommitted) -> None:
        try:
            await self.dispatcher.handle_attendance_committed(event)
        except Exception:
            logger.error(f"Notification dispatch failed for record {event.record_id}.", exc_info=True)

    async def amend(
        self, session_id: UUID, student_id: str, status: AttendanceStatus, reason: str, amended_by: str
    ) -> AttendanceRecord:
        """The authorized correction path for an existing record."""
        if not reason or len(reason.strip()) < 5:
            raise InvalidConfig("An amendment needs a reason of at least 5 characters.")

        amended = await self.db_client.amend_record(
            session_id, student_id, status, reason.strip(), amended_by, self._clock()
        )
        if amended is None:
            raise RecordNotFound(f"No attendance record of '{student_id}' in session {session_id}.")
        logger.info(f"Record of '{student_id}' in session {session_id} amended to '{status.value}' by '{amended_by}'.")
        return amended

    async def get_record(self, session_id: UUID, student_id: str) -> Optional[AttendanceRecord]:
        return await self.db_client.get_record(session_id, student_id)

    async def list_records(self, session_id: UUID) -> List[AttendanceRecord]:
        return await self.db_client.list_records(session_id)
