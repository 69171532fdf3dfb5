import asyncio
import os
import sys
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple
from uuid import UUID

# Settings are read at import time, so test defaults must be in place first.
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ.setdefault("DESCRIPTOR_EXTRACTOR_URL", "http://extractor.test")
os.environ.setdefault("NOTIFICATION_SERVICE_URL", "http://notifier.test")
os.environ.setdefault("RATE_LIMITER_REDIS_URL", "memory://")
os.environ.setdefault("DESCRIPTOR_LENGTH", "4")

import pytest

from attendify.backend.db.db_client import CommitResult
from attendify.backend.models.db_models import (
    AttendanceRecord, AttendanceSession, AttendanceStatus, AttemptOutcome, DeliveryStatus,
    EnrollmentTemplate, Notification, NotificationDelivery, Thresholds, User, VerificationAttempt
)

# This is the crucial fix for Windows asyncio issues with pytest.
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


FIXED_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class InMemoryPostgresClient:
    """
    Stateful stand-in for AsyncPostgresClient with the same method surface.
    It keeps the invariants the real tables enforce: one record per
    (student, session) and inserts only into active sessions.
    """
    def __init__(self):
        self.users: Dict[str, User] = {}
        self.sessions: Dict[UUID, AttendanceSession] = {}
        self.templates: Dict[str, EnrollmentTemplate] = {}
        self.records: Dict[Tuple[UUID, str], AttendanceRecord] = {}
        self.attempts: List[VerificationAttempt] = []
        self.notifications: Dict[UUID, Notification] = {}
        self.deliveries: Dict[UUID, NotificationDelivery] = {}

    # --- users ---
    async def add_users(self, users: List[User]):
        for user in users:
            self.users[user.user_id] = user

    async def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    # --- sessions ---
    async def insert_session(self, session: AttendanceSession):
        self.sessions[session.session_id] = session.model_copy(deep=True)

    async def get_session(self, session_id: UUID) -> Optional[AttendanceSession]:
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def get_active_session(self, subject_id: str, teacher_id: str, session_date: date) -> Optional[AttendanceSession]:
        matches = [
            s for s in self.sessions.values()
            if s.subject_id == subject_id and s.teacher_id == teacher_id and s.session_date == session_date and s.is_active
        ]
        matches.sort(key=lambda s: s.start_time, reverse=True)
        return matches[0].model_copy(deep=True) if matches else None

    async def list_sessions(self, teacher_id: str) -> List[AttendanceSession]:
        return [s.model_copy(deep=True) for s in self.sessions.values() if s.teacher_id == teacher_id]

    async def close_session(self, session_id: UUID, end_time: datetime) -> Optional[AttendanceSession]:
        session = self.sessions.get(session_id)
        if session is None or not session.is_active:
            return None
        session.is_active = False
        session.end_time = end_time
        return session.model_copy(deep=True)

    async def update_session_thresholds(self, session_id: UUID, thresholds: Thresholds) -> Optional[AttendanceSession]:
        session = self.sessions.get(session_id)
        if session is None or not session.is_active:
            return None
        session.thresholds = thresholds
        return session.model_copy(deep=True)

    # --- templates ---
    async def get_template(self, student_id: str) -> Optional[EnrollmentTemplate]:
        return self.templates.get(student_id)

    async def upsert_template(self, template: EnrollmentTemplate) -> EnrollmentTemplate:
        self.templates[template.student_id] = template
        return template

    # --- records ---
    async def commit_record(self, record: AttendanceRecord) -> Tuple[CommitResult, Optional[AttendanceRecord]]:
        session = self.sessions.get(record.session_id)
        if session is None:
            return CommitResult.NOT_FOUND, None
        if not session.is_active:
            return CommitResult.INACTIVE, None
        key = (record.session_id, record.student_id)
        if key in self.records:
            return CommitResult.DUPLICATE, None
        self.records[key] = record.model_copy(deep=True)
        return CommitResult.INSERTED, record.model_copy(deep=True)

    async def get_record(self, session_id: UUID, student_id: str) -> Optional[AttendanceRecord]:
        record = self.records.get((session_id, student_id))
        return record.model_copy(deep=True) if record else None

    async def list_records(self, session_id: UUID) -> List[AttendanceRecord]:
        return [r.model_copy(deep=True) for (sid, _), r in self.records.items() if sid == session_id]

    async def amend_record(self, session_id, student_id, status: AttendanceStatus, reason, amended_by, amended_at):
        record = self.records.get((session_id, student_id))
        if record is None:
            return None
        record.status = status
        record.amend_reason = reason
        record.amended_by = amended_by
        record.amended_at = amended_at
        return record.model_copy(deep=True)

    async def mark_parent_notified(self, record_id: UUID, notified_at: datetime):
        for record in self.records.values():
            if record.record_id == record_id:
                record.parent_notified = True
                record.parent_notified_at = notified_at

    # --- attempts ---
    async def add_attempt(self, attempt: VerificationAttempt):
        self.attempts.append(attempt)

    async def get_attempts(self, session_id: UUID, include_failures: bool = True) -> List[VerificationAttempt]:
        return [
            a for a in self.attempts
            if a.session_id == session_id and (include_failures or a.outcome == AttemptOutcome.MATCHED)
        ]

    # --- notifications ---
    async def add_notification(self, notification: Notification):
        self.notifications[notification.notification_id] = notification

    async def list_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        items = [n for n in self.notifications.values() if n.user_id == user_id and (not unread_only or not n.is_read)]
        items.sort(key=lambda n: n.timestamp, reverse=True)
        return items[:limit]

    async def count_unread_notifications(self, user_id: str) -> int:
        return sum(1 for n in self.notifications.values() if n.user_id == user_id and not n.is_read)

    async def mark_notification_read(self, notification_id: UUID, user_id: str) -> bool:
        notification = self.notifications.get(notification_id)
        if notification is None or notification.user_id != user_id:
            return False
        notification.is_read = True
        return True

    async def mark_all_notifications_read(self, user_id: str) -> int:
        updated = 0
        for notification in self.notifications.values():
            if notification.user_id == user_id and not notification.is_read:
                notification.is_read = True
                updated += 1
        return updated

    # --- deliveries ---
    async def add_delivery(self, delivery: NotificationDelivery):
        self.deliveries[delivery.delivery_id] = delivery.model_copy(deep=True)

    async def update_delivery(self, delivery_id: UUID, status: DeliveryStatus, attempts: int, last_error, updated_at):
        delivery = self.deliveries[delivery_id]
        delivery.status = status
        delivery.attempts = attempts
        delivery.last_error = last_error
        delivery.updated_at = updated_at

    async def get_failed_deliveries(self, max_retries: int, limit: int = 100) -> List[NotificationDelivery]:
        failed = [
            d.model_copy(deep=True) for d in self.deliveries.values()
            if d.status == DeliveryStatus.FAILED and d.attempts < max_retries
        ]
        return failed[:limit]


class InMemoryRedisClient:
    """Stand-in for RedisClient's attempt counters."""
    def __init__(self):
        self.counters: Dict[str, int] = {}

    async def get_attempt_count(self, session_id: UUID, student_id: str) -> int:
        return self.counters.get(f"{session_id}:{student_id}", 0)

    async def reserve_attempt(self, session_id: UUID, student_id: str, max_attempts: int, ttl_seconds: int) -> Optional[int]:
        key = f"{session_id}:{student_id}"
        current = self.counters.get(key, 0)
        if current >= max_attempts:
            return None
        self.counters[key] = current + 1
        return current + 1

    async def clear_attempts(self, session_id: UUID) -> int:
        keys = [k for k in self.counters if k.startswith(f"{session_id}:")]
        for key in keys:
            del self.counters[key]
        return len(keys)


@pytest.fixture
def fake_db() -> InMemoryPostgresClient:
    return InMemoryPostgresClient()

@pytest.fixture
def fake_redis() -> InMemoryRedisClient:
    return InMemoryRedisClient()

@pytest.fixture
def clock():
    """Deterministic clock returning a fixed instant."""
    return lambda: FIXED_NOW
