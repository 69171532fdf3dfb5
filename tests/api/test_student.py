import pytest
import uuid
from datetime import date

from attendify.backend.config.config import settings
from attendify.backend.models.db_models import (
    AttendanceMode, AttendanceSession, EnrollmentTemplate, Thresholds
)
from attendify.backend.models.pipeline_models import ExtractedDescriptor, ExtractionFailure
from attendify.backend.tools.descriptor_extractor import ExtractionError
from tests.api.conftest import TEMPLATE_VECTOR, auth_headers, jpeg
from tests.conftest import FIXED_NOW

STUDENT = auth_headers("S001", "student", "Demo Student 1")
TEACHER = auth_headers("T001", "teacher", "Demo Teacher 1")


async def seed_session(fake_db, mode=AttendanceMode.FACE_SCAN, is_active=True) -> AttendanceSession:
    session = AttendanceSession(
        subject_id="MATH101", teacher_id="T001", session_name="Calculus - Week 3",
        session_date=date(2026, 3, 2), start_time=FIXED_NOW, mode=mode, is_active=is_active,
        thresholds=Thresholds(confidence=0.8, liveness=0.6, max_attempts=3),
    )
    await fake_db.insert_session(session)
    return session

async def enroll(fake_db):
    await fake_db.upsert_template(EnrollmentTemplate(
        student_id="S001", descriptor=TEMPLATE_VECTOR, quality_score=0.95, verified=True, setup_timestamp=FIXED_NOW
    ))

def capture(liveness: float, descriptor=None) -> ExtractedDescriptor:
    return ExtractedDescriptor(descriptor=descriptor or TEMPLATE_VECTOR, quality=0.9, liveness=liveness)


@pytest.mark.asyncio
class TestStudentVerification:

    async def test_check_in_flow(self, client, fake_db, extractor):
        """Low liveness, then a match, then the record already exists."""
        session = await seed_session(fake_db)
        await enroll(fake_db)
        url = f"/student/sessions/{session.session_id}/verify"
        extractor.side_effect = [capture(0.5), capture(0.7)]

        first = await client.post(url, files=jpeg(), headers=STUDENT)
        assert first.status_code == 200
        assert first.json()["decision"] == "rejected"
        assert first.json()["reason"] == "low_liveness"

        second = await client.post(url, files=jpeg(), headers=STUDENT)
        assert second.json()["decision"] == "matched"
        assert second.json()["record"]["mode"] == "face_scan"

        third = await client.post(url, files=jpeg(), headers=STUDENT)
        assert third.status_code == 409

        status_response = await client.get(f"/student/sessions/{session.session_id}/status", headers=STUDENT)
        assert status_response.json()["status"] == "present"
        assert len(fake_db.records) == 1

    async def test_no_face_is_logged_without_record(self, client, fake_db, extractor, notifier):
        session = await seed_session(fake_db)
        await enroll(fake_db)
        extractor.side_effect = ExtractionError(ExtractionFailure.NO_FACE, "no face")

        response = await client.post(f"/student/sessions/{session.session_id}/verify", files=jpeg(), headers=STUDENT)

        assert response.status_code == 200
        assert response.json()["decision"] == "extraction_failed"
        assert response.json()["reason"] == "no_face"
        assert fake_db.records == {}
        assert [a.outcome.value for a in fake_db.attempts] == ["extraction_failed"]
        notifier.assert_not_awaited()

    async def test_attempts_exhausted(self, client, fake_db, extractor):
        session = await seed_session(fake_db)
        await enroll(fake_db)
        extractor.return_value = capture(0.1)
        url = f"/student/sessions/{session.session_id}/verify"

        for _ in range(3):
            response = await client.post(url, files=jpeg(), headers=STUDENT)
            assert response.json()["decision"] == "rejected"

        exhausted = await client.post(url, files=jpeg(), headers=STUDENT)
        assert exhausted.status_code == 409
        assert extractor.await_count == 3

    async def test_closed_session(self, client, fake_db):
        session = await seed_session(fake_db, is_active=False)
        await enroll(fake_db)
        response = await client.post(f"/student/sessions/{session.session_id}/verify", files=jpeg(), headers=STUDENT)
        assert response.status_code == 409

    async def test_manual_session(self, client, fake_db):
        session = await seed_session(fake_db, mode=AttendanceMode.MANUAL)
        await enroll(fake_db)
        response = await client.post(f"/student/sessions/{session.session_id}/verify", files=jpeg(), headers=STUDENT)
        assert response.status_code == 409

    async def test_without_enrollment(self, client, fake_db):
        session = await seed_session(fake_db)
        response = await client.post(f"/student/sessions/{session.session_id}/verify", files=jpeg(), headers=STUDENT)
        assert response.status_code == 404

    async def test_unknown_session(self, client):
        response = await client.post(f"/student/sessions/{uuid.uuid4()}/verify", files=jpeg(), headers=STUDENT)
        assert response.status_code == 404

    async def test_oversized_image(self, client, fake_db, monkeypatch):
        monkeypatch.setattr(settings, "MAX_IMAGE_BYTES", 8)
        session = await seed_session(fake_db)

        response = await client.post(f"/student/sessions/{session.session_id}/verify", files=jpeg(b"0123456789"), headers=STUDENT)
        assert response.status_code == 413

    async def test_teachers_cannot_use_student_check_in(self, client, fake_db):
        session = await seed_session(fake_db)
        response = await client.post(f"/student/sessions/{session.session_id}/verify", files=jpeg(), headers=TEACHER)
        assert response.status_code == 403

    async def test_status_without_record(self, client, fake_db):
        session = await seed_session(fake_db)
        response = await client.get(f"/student/sessions/{session.session_id}/status", headers=STUDENT)
        assert response.status_code == 404


@pytest.mark.asyncio
class TestStudentEnrollment:

    async def test_enroll_and_read_back(self, client, fake_db):
        missing = await client.get("/student/enrollment", headers=STUDENT)
        assert missing.status_code == 404

        response = await client.post("/student/enrollment", files=jpeg(), headers=STUDENT)
        assert response.status_code == 200
        assert response.json()["setup_by"] == "S001"

        stored = await client.get("/student/enrollment", headers=STUDENT)
        assert stored.json()["quality_score"] == 0.9

    async def test_poor_quality_is_unprocessable(self, client, fake_db, extractor):
        extractor.return_value = ExtractedDescriptor(descriptor=TEMPLATE_VECTOR, quality=0.4, liveness=0.9)

        response = await client.post("/student/enrollment", files=jpeg(), headers=STUDENT)

        assert response.status_code == 422
        assert fake_db.templates == {}
