# feeledger/services/notification_service.py
#
# The ledger does NOT deliver email/SMS/push itself.
# It posts each event to n8n, which fans it out to channels.
#
# Delivery is best-effort: a notification failure must NEVER
# block or roll back the financial write that triggered it.

from typing import Optional
import logging

import httpx

from feeledger.core.config import settings
from feeledger.schemas.notifications import Notification, NotificationType, RelatedEntity

logger = logging.getLogger(__name__)


class N8nNotifier:

    def __init__(
        self,
        base_url: Optional[str] = None,
        webhook: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = (
            f"{(base_url or settings.N8N_WEBHOOK_BASE_URL).rstrip('/')}/"
            f"{webhook or settings.N8N_NOTIFICATION_WEBHOOK}"
        )
        self._transport = transport

    async def send(self, notification: Notification) -> bool:
        """Returns True when n8n accepted the event. Never raises."""
        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
                response = await client.post(self.url, json=notification.model_dump(mode="json"))
            if response.status_code not in (200, 201, 202):
                logger.warning(
                    f"n8n returned {response.status_code} for "
                    f"{notification.type.value} → {notification.recipient_id}"
                )
                return False
            return True
        except Exception as e:
            logger.error(
                f"Failed to notify {notification.recipient_id} "
                f"[{notification.type.value}]: {e}"
            )
            return False

    async def notify(
        self,
        recipient_id: str,
        type: NotificationType,
        title: str,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> bool:
        related = RelatedEntity(entity_type=entity_type, entity_id=entity_id) if entity_type else None
        return await self.send(Notification(
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            related_entity=related,
        ))
