import logging

from ..db.db_client import AsyncPostgresClient
from ..services.notification_service import NotificationService

logger = logging.getLogger(__name__)


async def retry_failed_notifications_task(db_client: AsyncPostgresClient):
    """
    Runs periodically and retries notifier deliveries that failed earlier.
    A failing run is logged and left for the next tick.
    """
    logger.info("Running retry_failed_notifications_task...")
    service = NotificationService(db_client=db_client)
    try:
        sent = await service.retry_failed()
    except Exception as e:
        logger.error(f"retry_failed_notifications_task failed: {e}", exc_info=True)
        return
    if sent:
        logger.info(f"retry_failed_notifications_task delivered {sent} pending notification(s).")
    else:
        logger.info("retry_failed_notifications_task found nothing to deliver.")
