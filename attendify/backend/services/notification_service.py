import logging
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID
from datetime import datetime

from ..config.config import settings
from ..db.db_client import AsyncPostgresClient
from ..models.db_models import (
    AttendanceStatus, Notification, NotificationDelivery, DeliveryStatus
)
from ..models.pipeline_models import AttendanceCommitted
from ..tools.notification_client import notify, NotificationError
from .errors import NotFound
from .session_service import utc_now

logger = logging.getLogger(__name__)

PARENT_ATTENDANCE_EMAIL = "parent_attendance_email"
TEACHER_ABSENCE_ALERT = "teacher_absence_alert"


class NotificationService:
    """
    Notification Dispatcher: turns committed attendance into in-app
    notifications and calls to the external notifier. Every external call is
    written to the delivery ledger so failures can be retried later.
    """
    def __init__(self, db_client: AsyncPostgresClient, notifier=notify, clock: Callable[[], datetime] = utc_now):
        self.db_client = db_client
        self._notifier = notifier
        self._clock = clock

    async def handle_attendance_committed(self, event: AttendanceCommitted) -> None:
        student = await self.db_client.get_user(event.student_id)
        student_name = student.full_name if student else event.student_id
        status_label = event.status.value.replace("_", " ")

        await self.db_client.add_notification(Notification(
            user_id=event.student_id,
            type="attendance_marked",
            title="Attendance recorded",
            message=f"You were marked {status_label} in {event.session_name}.",
            payload={"session_id": str(event.session_id), "status": event.status.value},
            timestamp=self._clock(),
            related_id=str(event.record_id),
        ))

        if student and student.parent_email:
            payload = {
                "email": student.parent_email,
                "student_name": student_name,
                "session_name": event.session_name,
                "status": event.status.value,
                "timestamp": event.timestamp.isoformat(),
            }
            delivered = await self._deliver(event.student_id, PARENT_ATTENDANCE_EMAIL, payload, event.record_id)
            if delivered:
                await self.db_client.mark_parent_notified(event.record_id, self._clock())
        else:
            logger.info(f"No parent email on file for '{event.student_id}'; skipping parent notification.")

        if event.status == AttendanceStatus.ABSENT:
            await self.db_client.add_notification(Notification(
                user_id=event.teacher_id,
                type="absence_alert",
                title="Student absent",
                message=f"{student_name} was marked absent in {event.session_name}.",
                payload={"session_id": str(event.session_id), "student_id": event.student_id},
                timestamp=self._clock(),
                related_id=str(event.record_id),
            ))
            await self._deliver(
                event.teacher_id,
                TEACHER_ABSENCE_ALERT,
                {"student_id": event.student_id, "student_name": student_name, "session_name": event.session_name},
                event.record_id,
            )

    async def _deliver(self, user_id: str, kind: str, payload: Dict[str, Any], record_id: Optional[UUID] = None) -> bool:
        now = self._clock()
        delivery = NotificationDelivery(
            user_id=user_id, kind=kind, payload=payload, related_record_id=record_id,
            created_at=now, updated_at=now,
        )
        await self.db_client.add_delivery(delivery)
        return await self._attempt(delivery)

    async def _attempt(self, delivery: NotificationDelivery) -> bool:
        attempts = delivery.attempts + 1
        try:
            await self._notifier(delivery.user_id, delivery.kind, delivery.payload)
        except NotificationError as e:
            logger.warning(f"Delivery {delivery.delivery_id} ({delivery.kind}) to '{delivery.user_id}' failed: {e}")
            await self.db_client.update_delivery(delivery.delivery_id, DeliveryStatus.FAILED, attempts, str(e), self._clock())
            return False
        except Exception as e:
            logger.error(f"Unexpected error delivering {delivery.delivery_id} ({delivery.kind}) to '{delivery.user_id}'.", exc_info=True)
            await self.db_client.update_delivery(delivery.delivery_id, DeliveryStatus.FAILED, attempts, str(e), self._clock())
            return False

        await self.db_client.update_delivery(delivery.delivery_id, DeliveryStatus.SENT, attempts, None, self._clock())
        logger.info(f"Delivery {delivery.delivery_id} ({delivery.kind}) to '{delivery.user_id}' sent.")
        return True

    async def retry_failed(self, max_retries: Optional[int] = None, limit: int = 100) -> int:
        """Retries failed deliveries below the retry cap. Returns how many went through."""
        max_retries = max_retries if max_retries is not None else settings.NOTIFICATION_MAX_RETRIES
        failed = await self.db_client.get_failed_deliveries(max_retries, limit)
        sent = 0
        for delivery in failed:
            if await self._attempt(delivery):
                sent += 1
                if delivery.kind == PARENT_ATTENDANCE_EMAIL and delivery.related_record_id:
                    await self.db_client.mark_parent_notified(delivery.related_record_id, self._clock())
        return sent

    # ===== In-app notifications =====

    async def list_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        return await self.db_client.list_notifications(user_id, unread_only=unread_only, limit=limit)

    async def unread_count(self, user_id: str) -> int:
        return await self.db_client.count_unread_notifications(user_id)

    async def mark_read(self, user_id: str, notification_id: UUID) -> None:
        if not await self.db_client.mark_notification_read(notification_id, user_id):
            raise NotFound(f"Notification {notification_id} not found.")

    async def mark_all_read(self, user_id: str) -> int:
        return await self.db_client.mark_all_notifications_read(user_id)
