import asyncio
import os
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import asyncpg
import pytest
import pytest_asyncio

from attendify.backend.db.db_client import AsyncPostgresClient, CommitResult
from attendify.backend.models.db_models import (
    AttendanceMode, AttendanceRecord, AttendanceSession, AttendanceStatus, AttemptOutcome,
    DeliveryStatus, EnrollmentTemplate, Notification, NotificationDelivery, Thresholds, User,
    VerificationAttempt, VerificationMetadata
)

# ----- Integration tests against a real PostgreSQL; set TEST_DATABASE_URL to run them -----
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")
SCHEMA_PATH = Path(__file__).resolve().parents[2] / "attendify" / "backend" / "db" / "schema.sql"
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(scope="function")
async def db_pool():
    if not TEST_DATABASE_URL:
        pytest.skip("TEST_DATABASE_URL is not set")
    pool = await asyncpg.create_pool(dsn=TEST_DATABASE_URL)
    async with pool.acquire() as connection:
        await connection.execute(SCHEMA_PATH.read_text())
        await connection.execute(
            "TRUNCATE TABLE notification_deliveries, notifications, verification_attempts, "
            "attendance_records, enrollment_templates, attendance_sessions, users CASCADE;"
        )
    yield pool
    await pool.close()

@pytest_asyncio.fixture(scope="function")
async def db_client(db_pool):
    client = AsyncPostgresClient(pool=db_pool)
    await client.add_users([
        User(user_id="T001", full_name="Demo Teacher 1", role="teacher"),
        User(user_id="S001", full_name="Demo Student 1", role="student", parent_email="parent@example.com"),
        User(user_id="S002", full_name="Demo Student 2", role="student"),
    ])
    return client


# ===== Helpers =====

def sample_session(**overrides) -> AttendanceSession:
    data = dict(
        subject_id="MATH101", teacher_id="T001", session_name="Calculus - Week 3",
        session_date=date(2026, 3, 2), start_time=NOW, mode=AttendanceMode.FACE_SCAN,
        thresholds=Thresholds(confidence=0.8, liveness=0.6, max_attempts=3),
    )
    data.update(overrides)
    return AttendanceSession(**data)

def sample_record(session: AttendanceSession, student_id: str = "S001") -> AttendanceRecord:
    return AttendanceRecord(
        student_id=student_id, teacher_id=session.teacher_id, subject_id=session.subject_id,
        session_id=session.session_id, record_date=session.session_date, status=AttendanceStatus.PRESENT,
        check_in_time=NOW, mode=AttendanceMode.FACE_SCAN,
        verification=VerificationMetadata(confidence=0.9, liveness_score=0.7, quality_score=0.85, processing_time_ms=140.0),
    )


# ===== Sessions =====

@pytest.mark.asyncio
async def test_session_lifecycle(db_client: AsyncPostgresClient):
    session = sample_session(location="Room B12")
    await db_client.insert_session(session)

    fetched = await db_client.get_session(session.session_id)
    assert fetched.thresholds == session.thresholds
    assert fetched.location == "Room B12"

    active = await db_client.get_active_session("MATH101", "T001", date(2026, 3, 2))
    assert active.session_id == session.session_id

    updated = await db_client.update_session_thresholds(session.session_id, Thresholds(confidence=0.9, liveness=0.7, max_attempts=5))
    assert updated.thresholds.max_attempts == 5

    closed = await db_client.close_session(session.session_id, NOW + timedelta(hours=1))
    assert closed.is_active is False
    assert await db_client.close_session(session.session_id, NOW + timedelta(hours=2)) is None
    assert await db_client.get_active_session("MATH101", "T001", date(2026, 3, 2)) is None
    assert await db_client.update_session_thresholds(session.session_id, session.thresholds) is None
    assert len(await db_client.list_sessions("T001")) == 1


# ===== Records =====

@pytest.mark.asyncio
async def test_commit_record_outcomes(db_client: AsyncPostgresClient):
    session = sample_session()
    await db_client.insert_session(session)

    result, stored = await db_client.commit_record(sample_record(session))
    assert result == CommitResult.INSERTED
    assert stored.verification.confidence == 0.9

    result, stored = await db_client.commit_record(sample_record(session))
    assert result == CommitResult.DUPLICATE
    assert stored is None

    await db_client.close_session(session.session_id, NOW)
    result, _ = await db_client.commit_record(sample_record(session, student_id="S002"))
    assert result == CommitResult.INACTIVE

    result, _ = await db_client.commit_record(sample_record(sample_session()))
    assert result == CommitResult.NOT_FOUND

@pytest.mark.asyncio
async def test_concurrent_commits_insert_once(db_client: AsyncPostgresClient):
    session = sample_session()
    await db_client.insert_session(session)

    results = await asyncio.gather(*[db_client.commit_record(sample_record(session)) for _ in range(5)])

    assert [r for r, _ in results].count(CommitResult.INSERTED) == 1
    assert len(await db_client.list_records(session.session_id)) == 1

@pytest.mark.asyncio
async def test_amend_and_parent_flag(db_client: AsyncPostgresClient):
    session = sample_session()
    await db_client.insert_session(session)
    _, record = await db_client.commit_record(sample_record(session))

    amended = await db_client.amend_record(session.session_id, "S001", AttendanceStatus.LATE, "Arrived late", "T001", NOW)
    assert amended.status == AttendanceStatus.LATE
    assert amended.amend_reason == "Arrived late"

    await db_client.mark_parent_notified(record.record_id, NOW)
    assert (await db_client.get_record(session.session_id, "S001")).parent_notified is True


# ===== Templates, attempts, notifications =====

@pytest.mark.asyncio
async def test_template_upsert(db_client: AsyncPostgresClient):
    template = EnrollmentTemplate(student_id="S001", descriptor=[0.1, 0.2, 0.3, 0.4], quality_score=0.8, verified=True, setup_timestamp=NOW)
    await db_client.upsert_template(template)
    await db_client.upsert_template(template.model_copy(update={"quality_score": 0.95}))

    stored = await db_client.get_template("S001")
    assert stored.quality_score == 0.95
    assert stored.descriptor == [0.1, 0.2, 0.3, 0.4]

@pytest.mark.asyncio
async def test_attempts_round_trip(db_client: AsyncPostgresClient):
    session = sample_session()
    await db_client.insert_session(session)
    await db_client.add_attempt(VerificationAttempt(
        session_id=session.session_id, student_id="S001", outcome=AttemptOutcome.EXTRACTION_FAILED,
        reason="no_face", thresholds=session.thresholds, timestamp=NOW,
    ))
    await db_client.add_attempt(VerificationAttempt(
        session_id=session.session_id, student_id="S001", outcome=AttemptOutcome.MATCHED,
        confidence=0.9, liveness_score=0.7, thresholds=session.thresholds, timestamp=NOW + timedelta(seconds=5),
    ))

    attempts = await db_client.get_attempts(session.session_id)
    assert [a.outcome for a in attempts] == [AttemptOutcome.EXTRACTION_FAILED, AttemptOutcome.MATCHED]
    assert attempts[0].thresholds == session.thresholds
    assert len(await db_client.get_attempts(session.session_id, include_failures=False)) == 1

@pytest.mark.asyncio
async def test_notifications_and_deliveries(db_client: AsyncPostgresClient):
    notification = Notification(user_id="S001", type="attendance_marked", title="Attendance recorded",
                                message="You were marked present.", payload={"status": "present"}, timestamp=NOW)
    await db_client.add_notification(notification)

    listed = await db_client.list_notifications("S001")
    assert listed[0].payload == {"status": "present"}
    assert await db_client.count_unread_notifications("S001") == 1
    assert await db_client.mark_notification_read(notification.notification_id, "S002") is False
    assert await db_client.mark_notification_read(notification.notification_id, "S001") is True
    assert await db_client.mark_all_notifications_read("S001") == 0

    delivery = NotificationDelivery(user_id="S001", kind="parent_attendance_email", payload={"email": "parent@example.com"},
                                    created_at=NOW, updated_at=NOW)
    await db_client.add_delivery(delivery)
    await db_client.update_delivery(delivery.delivery_id, DeliveryStatus.FAILED, 1, "smtp down", NOW)

    failed = await db_client.get_failed_deliveries(max_retries=5)
    assert [d.delivery_id for d in failed] == [delivery.delivery_id]
    assert failed[0].payload == {"email": "parent@example.com"}
    assert await db_client.get_failed_deliveries(max_retries=1) == []
