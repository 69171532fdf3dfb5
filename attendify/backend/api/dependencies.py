from fastapi import Request, Depends
import redis.asyncio as redis
import asyncpg

from ..db.redis_client import RedisClient
from ..db.db_client import AsyncPostgresClient
from ..services.session_service import SessionService
from ..services.attendance_service import AttendanceService
from ..services.audit_service import AuditService
from ..services.notification_service import NotificationService
from ..services.verification_service import VerificationService
from ..services.enrollment_service import EnrollmentService


def get_redis_pool(request: Request) -> redis.ConnectionPool:
    """Redis connection pool created in the application lifespan."""
    return request.app.state.redis_pool

def get_postgres_pool(request: Request) -> asyncpg.Pool:
    """PostgreSQL connection pool created in the application lifespan."""
    return request.app.state.postgres_pool


def get_db_client(postgres_pool: asyncpg.Pool = Depends(get_postgres_pool)) -> AsyncPostgresClient:
    return AsyncPostgresClient(pool=postgres_pool)

def get_redis_client(redis_pool: redis.ConnectionPool = Depends(get_redis_pool)) -> RedisClient:
    return RedisClient(pool=redis_pool)


def get_session_service(
    redis_client: RedisClient = Depends(get_redis_client),
    db_client: AsyncPostgresClient = Depends(get_db_client)
) -> SessionService:
    """
    Builds a fresh SessionService for each request.

    Clients are cheap wrappers around the shared pools created at startup, so
    every request gets its own service objects without opening new connections.
    """
    return SessionService(redis_client=redis_client, db_client=db_client)

def get_notification_service(db_client: AsyncPostgresClient = Depends(get_db_client)) -> NotificationService:
    return NotificationService(db_client=db_client)

def get_attendance_service(
    db_client: AsyncPostgresClient = Depends(get_db_client),
    notification_service: NotificationService = Depends(get_notification_service)
) -> AttendanceService:
    return AttendanceService(db_client=db_client, dispatcher=notification_service)

def get_audit_service(db_client: AsyncPostgresClient = Depends(get_db_client)) -> AuditService:
    return AuditService(db_client=db_client)

def get_enrollment_service(db_client: AsyncPostgresClient = Depends(get_db_client)) -> EnrollmentService:
    return EnrollmentService(db_client=db_client)

def get_verification_service(
    redis_client: RedisClient = Depends(get_redis_client),
    db_client: AsyncPostgresClient = Depends(get_db_client),
    session_service: SessionService = Depends(get_session_service),
    attendance_service: AttendanceService = Depends(get_attendance_service),
    audit_service: AuditService = Depends(get_audit_service)
) -> VerificationService:
    return VerificationService(
        redis_client=redis_client,
        db_client=db_client,
        session_service=session_service,
        attendance_service=attendance_service,
        audit_service=audit_service,
    )
