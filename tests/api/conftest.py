from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from fastapi import Depends

from attendify.backend.api import dependencies
from attendify.backend.api.auth import create_access_token
from attendify.backend.api.utilities.limiter import limiter
from attendify.backend.main import app
from attendify.backend.models.pipeline_models import DeliveryResult, ExtractedDescriptor
from attendify.backend.services.attendance_service import AttendanceService, wait_for_dispatches
from attendify.backend.services.audit_service import AuditService
from attendify.backend.services.enrollment_service import EnrollmentService
from attendify.backend.services.notification_service import NotificationService
from attendify.backend.services.session_service import SessionService
from attendify.backend.services.verification_service import VerificationService

API_PREFIX = "/api/v1"
TEMPLATE_VECTOR = [1.0, 0.0, 0.0, 0.0]


def auth_headers(user_id: str, role: str, name: str = None) -> dict:
    token = create_access_token({"sub": user_id, "role": role, "name": name or user_id})
    return {"Authorization": f"Bearer {token}"}

def jpeg(payload: bytes = b"capture") -> dict:
    return {"image": ("capture.jpg", b"\xff\xd8\xff\xe0" + payload, "image/jpeg")}


@pytest.fixture
def extractor():
    """Descriptor extractor stand-in; tests reassign return_value/side_effect per attempt."""
    return AsyncMock(return_value=ExtractedDescriptor(descriptor=TEMPLATE_VECTOR, quality=0.9, liveness=0.9))

@pytest.fixture
def notifier():
    return AsyncMock(return_value=DeliveryResult(delivered=True))

@pytest_asyncio.fixture
async def client(fake_db, fake_redis, extractor, notifier):
    """
    ASGI client against the real app. Storage clients are swapped for the
    in-memory fakes and the two external services are mocked.
    """
    notification_service = NotificationService(db_client=fake_db, notifier=notifier)

    def verification_service(
        session_service: SessionService = Depends(dependencies.get_session_service),
        attendance_service: AttendanceService = Depends(dependencies.get_attendance_service),
        audit_service: AuditService = Depends(dependencies.get_audit_service),
    ) -> VerificationService:
        return VerificationService(
            redis_client=fake_redis, db_client=fake_db, session_service=session_service,
            attendance_service=attendance_service, audit_service=audit_service, extractor=extractor,
        )

    app.dependency_overrides[dependencies.get_db_client] = lambda: fake_db
    app.dependency_overrides[dependencies.get_redis_client] = lambda: fake_redis
    app.dependency_overrides[dependencies.get_notification_service] = lambda: notification_service
    app.dependency_overrides[dependencies.get_enrollment_service] = lambda: EnrollmentService(
        db_client=fake_db, extractor=extractor
    )
    app.dependency_overrides[dependencies.get_verification_service] = verification_service
    limiter.enabled = False

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=f"http://test{API_PREFIX}") as ac:
        yield ac

    await wait_for_dispatches()
    limiter.enabled = True
    app.dependency_overrides.clear()
