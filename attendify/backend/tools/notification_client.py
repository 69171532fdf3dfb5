from typing import Any, Dict
import httpx

from ..config.config import settings
from ..models.pipeline_models import DeliveryResult


class NotificationError(Exception):
    """Delivery through the external notifier failed."""
    pass


async def notify(user_id: str, kind: str, payload: Dict[str, Any]) -> DeliveryResult:
    """Hands one notification to the external notifier (email, push)."""
    body = {"user_id": user_id, "kind": kind, "payload": payload}

    async with httpx.AsyncClient(timeout=settings.NOTIFICATION_TIMEOUT_SECONDS) as client:
        try:
            response = await client.post(f"{settings.NOTIFICATION_SERVICE_URL}/notify", json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotificationError(f"Notifier error: {e.response.status_code} - {e.response.text}") from e
        except httpx.HTTPError as e:
            raise NotificationError(f"Notifier request failed: {e}") from e

    try:
        data = response.json() if response.content else {}
    except ValueError:
        # Accepted with a non-JSON body.
        data = {}
    provider_id = data.get("id") if isinstance(data, dict) else None
    return DeliveryResult(delivered=True, provider_id=str(provider_id) if provider_id is not None else None)
