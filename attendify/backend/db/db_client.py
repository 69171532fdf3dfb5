import json
import logging
from datetime import date, datetime
from enum import Enum
from typing import List, Optional, Tuple
from uuid import UUID
import asyncpg

from ..models.db_models import (
    User, AttendanceSession, Thresholds, EnrollmentTemplate, AttendanceRecord,
    AttendanceStatus, VerificationMetadata, VerificationAttempt, AttemptOutcome,
    Notification, NotificationDelivery, DeliveryStatus
)

logger = logging.getLogger(__name__)


class CommitResult(str, Enum):
    """Result of the atomic active-check-and-insert in commit_record."""
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    INACTIVE = "inactive"
    NOT_FOUND = "not_found"


# --- Row <-> model conversion ---

def _session_from_record(record) -> AttendanceSession:
    data = dict(record)
    thresholds = Thresholds(
        confidence=data.pop("confidence_threshold"),
        liveness=data.pop("liveness_threshold"),
        max_attempts=data.pop("max_attempts"),
    )
    return AttendanceSession(**data, thresholds=thresholds)

def _attendance_record_from_record(record) -> AttendanceRecord:
    data = dict(record)
    confidence = data.pop("confidence")
    liveness_score = data.pop("liveness_score")
    quality_score = data.pop("quality_score")
    processing_time_ms = data.pop("processing_time_ms")
    verification = None
    if confidence is not None and liveness_score is not None:
        verification = VerificationMetadata(
            confidence=confidence,
            liveness_score=liveness_score,
            quality_score=quality_score,
            processing_time_ms=processing_time_ms or 0.0,
        )
    return AttendanceRecord(**data, verification=verification)

def _attempt_from_record(record) -> VerificationAttempt:
    data = dict(record)
    confidence_threshold = data.pop("confidence_threshold")
    liveness_threshold = data.pop("liveness_threshold")
    max_attempts = data.pop("max_attempts")
    thresholds = None
    if confidence_threshold is not None:
        thresholds = Thresholds(confidence=confidence_threshold, liveness=liveness_threshold, max_attempts=max_attempts)
    return VerificationAttempt(**data, thresholds=thresholds)

def _load_payload(data: dict) -> dict:
    # asyncpg hands JSONB columns back as text unless a codec is registered.
    if isinstance(data.get("payload"), str):
        data["payload"] = json.loads(data["payload"])
    return data


class AsyncPostgresClient:
    """
    PostgreSQL client that owns every durable read and write of the service.
    """
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    # ===== Users =====

    async def add_users(self, users: List[User]):
        """Mirrors profiles from the external user store. Existing rows are refreshed."""
        if not users:
            return
        query = """
            INSERT INTO users (user_id, full_name, role, email, parent_email)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (user_id) DO UPDATE SET
                full_name = EXCLUDED.full_name,
                role = EXCLUDED.role,
                email = EXCLUDED.email,
                parent_email = EXCLUDED.parent_email;
        """
        user_data = [(u.user_id, u.full_name, u.role, u.email, u.parent_email) for u in users]
        async with self._pool.acquire() as connection:
            await connection.executemany(query, user_data)

    async def get_user(self, user_id: str) -> Optional[User]:
        query = "SELECT * FROM users WHERE user_id = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, user_id)
            return User(**record) if record else None

    # ===== Attendance Sessions =====

    async def insert_session(self, session: AttendanceSession):
        query = """
            INSERT INTO attendance_sessions (
                session_id, subject_id, teacher_id, session_name, location, session_date,
                start_time, end_time, mode, is_active,
                confidence_threshold, liveness_threshold, max_attempts
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13);
        """
        async with self._pool.acquire() as connection:
            await connection.execute(
                query,
                session.session_id, session.subject_id, session.teacher_id, session.session_name,
                session.location, session.session_date, session.start_time, session.end_time,
                session.mode.value, session.is_active, session.thresholds.confidence,
                session.thresholds.liveness, session.thresholds.max_attempts
            )

    async def get_session(self, session_id: UUID) -> Optional[AttendanceSession]:
        query = "SELECT * FROM attendance_sessions WHERE session_id = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, session_id)
            return _session_from_record(record) if record else None

    async def get_active_session(self, subject_id: str, teacher_id: str, session_date: date) -> Optional[AttendanceSession]:
        """Most recently opened active session for (subject, teacher, date)."""
        query = """
            SELECT * FROM attendance_sessions
            WHERE subject_id = $1 AND teacher_id = $2 AND session_date = $3 AND is_active = TRUE
            ORDER BY start_time DESC
            LIMIT 1;
        """
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, subject_id, teacher_id, session_date)
            return _session_from_record(record) if record else None

    async def list_sessions(self, teacher_id: str) -> List[AttendanceSession]:
        query = "SELECT * FROM attendance_sessions WHERE teacher_id = $1 ORDER BY start_time DESC;"
        async with self._pool.acquire() as connection:
            records = await connection.fetch(query, teacher_id)
            return [_session_from_record(record) for record in records]

    async def close_session(self, session_id: UUID, end_time: datetime) -> Optional[AttendanceSession]:
        """
        Closes an active session in a single conditional UPDATE.

        Returns None when nothing was closed (unknown or already closed session),
        so a repeated close never touches the row. The UPDATE takes the row lock,
        which waits for commits holding FOR SHARE on the same session.
        """
        query = """
            UPDATE attendance_sessions
            SET is_active = FALSE, end_time = $2
            WHERE session_id = $1 AND is_active = TRUE
            RETURNING *;
        """
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, session_id, end_time)
            return _session_from_record(record) if record else None

    async def update_session_thresholds(self, session_id: UUID, thresholds: Thresholds) -> Optional[AttendanceSession]:
        """Retunes an active session. Closed sessions are immutable, so they are never matched."""
        query = """
            UPDATE attendance_sessions
            SET confidence_threshold = $2, liveness_threshold = $3, max_attempts = $4
            WHERE session_id = $1 AND is_active = TRUE
            RETURNING *;
        """
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(
                query, session_id, thresholds.confidence, thresholds.liveness, thresholds.max_attempts
            )
            return _session_from_record(record) if record else None

    # ===== Enrollment Templates =====

    async def get_template(self, student_id: str) -> Optional[EnrollmentTemplate]:
        query = "SELECT * FROM enrollment_templates WHERE student_id = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, student_id)
            return EnrollmentTemplate(**record) if record else None

    async def upsert_template(self, template: EnrollmentTemplate) -> EnrollmentTemplate:
        """One template per student; a new setup overwrites the previous one."""
        query = """
            INSERT INTO enrollment_templates (student_id, descriptor, quality_score, verified, setup_timestamp, setup_by)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (student_id) DO UPDATE SET
                descriptor = EXCLUDED.descriptor,
                quality_score = EXCLUDED.quality_score,
                verified = EXCLUDED.verified,
                setup_timestamp = EXCLUDED.setup_timestamp,
                setup_by = EXCLUDED.setup_by
            RETURNING *;
        """
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(
                query, template.student_id, template.descriptor, template.quality_score,
                template.verified, template.setup_timestamp, template.setup_by
            )
            return EnrollmentTemplate(**record)

    # ===== Attendance Records =====

    async def commit_record(self, record: AttendanceRecord) -> Tuple[CommitResult, Optional[AttendanceRecord]]:
        """
        Inserts a record only while its session is active, in one transaction.

        The session row is held with FOR SHARE until the insert finishes, so a
        concurrent close either waits for this commit or is seen as inactive.
        The (student_id, session_id) UNIQUE constraint settles racing commits.
        """
        insert_query = """
            INSERT INTO attendance_records (
                record_id, student_id, teacher_id, subject_id, session_id, record_date, status,
                check_in_time, mode, confidence, liveness_score, quality_score, processing_time_ms, notes
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            ON CONFLICT (student_id, session_id) DO NOTHING
            RETURNING *;
        """
        verification = record.verification
        async with self._pool.acquire() as connection:
            async with connection.transaction():
                session_row = await connection.fetchrow(
                    "SELECT is_active FROM attendance_sessions WHERE session_id = $1 FOR SHARE;",
                    record.session_id
                )
                if session_row is None:
                    return CommitResult.NOT_FOUND, None
                if not session_row["is_active"]:
                    return CommitResult.INACTIVE, None

                inserted = await connection.fetchrow(
                    insert_query,
                    record.record_id, record.student_id, record.teacher_id, record.subject_id,
                    record.session_id, record.record_date, record.status.value, record.check_in_time,
                    record.mode.value,
                    verification.confidence if verification else None,
                    verification.liveness_score if verification else None,
                    verification.quality_score if verification else None,
                    verification.processing_time_ms if verification else None,
                    record.notes
                )
                if inserted is None:
                    return CommitResult.DUPLICATE, None
                return CommitResult.INSERTED, _attendance_record_from_record(inserted)

    async def get_record(self, session_id: UUID, student_id: str) -> Optional[AttendanceRecord]:
        query = "SELECT * FROM attendance_records WHERE session_id = $1 AND student_id = $2;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, session_id, student_id)
            return _attendance_record_from_record(record) if record else None

    async def list_records(self, session_id: UUID) -> List[AttendanceRecord]:
        query = "SELECT * FROM attendance_records WHERE session_id = $1 ORDER BY check_in_time NULLS LAST, student_id;"
        async with self._pool.acquire() as connection:
            records = await connection.fetch(query, session_id)
            return [_attendance_record_from_record(record) for record in records]

    async def amend_record(
        self, session_id: UUID, student_id: str, status: AttendanceStatus,
        reason: str, amended_by: str, amended_at: datetime
    ) -> Optional[AttendanceRecord]:
        query = """
            UPDATE attendance_records
            SET status = $3, amend_reason = $4, amended_by = $5, amended_at = $6
            WHERE session_id = $1 AND student_id = $2
            RETURNING *;
        """
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, session_id, student_id, status.value, reason, amended_by, amended_at)
            return _attendance_record_from_record(record) if record else None

    async def mark_parent_notified(self, record_id: UUID, notified_at: datetime):
        query = "UPDATE attendance_records SET parent_notified = TRUE, parent_notified_at = $2 WHERE record_id = $1;"
        async with self._pool.acquire() as connection:
            return await connection.execute(query, record_id, notified_at)

    # ===== Verification Attempts (audit) =====

    async def add_attempt(self, attempt: VerificationAttempt):
        query = """
            INSERT INTO verification_attempts (
                attempt_id, session_id, student_id, captured_image_ref, content_type, descriptor_length,
                confidence, liveness_score, quality_score, processing_time_ms, outcome, reason, message,
                confidence_threshold, liveness_threshold, max_attempts, timestamp
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
            ON CONFLICT (attempt_id) DO NOTHING;
        """
        thresholds = attempt.thresholds
        async with self._pool.acquire() as connection:
            await connection.execute(
                query,
                attempt.attempt_id, attempt.session_id, attempt.student_id, attempt.captured_image_ref,
                attempt.content_type, attempt.descriptor_length, attempt.confidence, attempt.liveness_score,
                attempt.quality_score, attempt.processing_time_ms, attempt.outcome.value, attempt.reason,
                attempt.message,
                thresholds.confidence if thresholds else None,
                thresholds.liveness if thresholds else None,
                thresholds.max_attempts if thresholds else None,
                attempt.timestamp
            )

    async def get_attempts(self, session_id: UUID, include_failures: bool = True) -> List[VerificationAttempt]:
        if include_failures:
            query = "SELECT * FROM verification_attempts WHERE session_id = $1 ORDER BY timestamp;"
            args = (session_id,)
        else:
            query = "SELECT * FROM verification_attempts WHERE session_id = $1 AND outcome = $2 ORDER BY timestamp;"
            args = (session_id, AttemptOutcome.MATCHED.value)
        async with self._pool.acquire() as connection:
            records = await connection.fetch(query, *args)
            return [_attempt_from_record(record) for record in records]

    # ===== In-app Notifications =====

    async def add_notification(self, notification: Notification):
        query = """
            INSERT INTO notifications (notification_id, user_id, type, title, message, payload, is_read, timestamp, related_id)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9);
        """
        async with self._pool.acquire() as connection:
            await connection.execute(
                query,
                notification.notification_id, notification.user_id, notification.type, notification.title,
                notification.message, json.dumps(notification.payload, default=str), notification.is_read,
                notification.timestamp, notification.related_id
            )

    async def list_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        query = """
            SELECT * FROM notifications
            WHERE user_id = $1 AND ($2 = FALSE OR is_read = FALSE)
            ORDER BY timestamp DESC
            LIMIT $3;
        """
        async with self._pool.acquire() as connection:
            records = await connection.fetch(query, user_id, unread_only, limit)
            return [Notification(**_load_payload(dict(record))) for record in records]

    async def count_unread_notifications(self, user_id: str) -> int:
        query = "SELECT COUNT(*) FROM notifications WHERE user_id = $1 AND is_read = FALSE;"
        async with self._pool.acquire() as connection:
            return await connection.fetchval(query, user_id)

    async def mark_notification_read(self, notification_id: UUID, user_id: str) -> bool:
        query = "UPDATE notifications SET is_read = TRUE WHERE notification_id = $1 AND user_id = $2 RETURNING notification_id;"
        async with self._pool.acquire() as connection:
            return await connection.fetchval(query, notification_id, user_id) is not None

    async def mark_all_notifications_read(self, user_id: str) -> int:
        query = "UPDATE notifications SET is_read = TRUE WHERE user_id = $1 AND is_read = FALSE RETURNING notification_id;"
        async with self._pool.acquire() as connection:
            records = await connection.fetch(query, user_id)
            return len(records)

    # ===== Notification Deliveries (retry ledger) =====

    async def add_delivery(self, delivery: NotificationDelivery):
        query = """
            INSERT INTO notification_deliveries (
                delivery_id, user_id, kind, payload, status, attempts, last_error, related_record_id, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9, $10);
        """
        async with self._pool.acquire() as connection:
            await connection.execute(
                query,
                delivery.delivery_id, delivery.user_id, delivery.kind, json.dumps(delivery.payload, default=str),
                delivery.status.value, delivery.attempts, delivery.last_error, delivery.related_record_id,
                delivery.created_at, delivery.updated_at
            )

    async def update_delivery(
        self, delivery_id: UUID, status: DeliveryStatus, attempts: int,
        last_error: Optional[str], updated_at: datetime
    ):
        query = """
            UPDATE notification_deliveries
            SET status = $2, attempts = $3, last_error = $4, updated_at = $5
            WHERE delivery_id = $1;
        """
        async with self._pool.acquire() as connection:
            return await connection.execute(query, delivery_id, status.value, attempts, last_error, updated_at)

    async def get_failed_deliveries(self, max_retries: int, limit: int = 100) -> List[NotificationDelivery]:
        query = """
            SELECT * FROM notification_deliveries
            WHERE status = 'failed' AND attempts < $1
            ORDER BY updated_at
            LIMIT $2;
        """
        async with self._pool.acquire() as connection:
            records = await connection.fetch(query, max_retries, limit)
            return [NotificationDelivery(**_load_payload(dict(record))) for record in records]
