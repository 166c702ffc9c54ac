# feeledger/services/activity_service.py
# Writes to activity_logs. Called after every significant action.

from typing import Optional, Any
import logging

from feeledger.core.database import FeeDB, ACTIVITY_LOGS
from feeledger.schemas.common import new_id
from feeledger.utils.dates import utcnow

logger = logging.getLogger(__name__)


class ActivityLog:

    def __init__(self, db: FeeDB):
        self.db = db

    async def log_activity(
        self,
        action: str,
        user_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[Any] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """
        Append-only audit log. Never raises: logging must never
        block or break the main operation.

        Action format: 'entity.verb'
        Examples:
            'ledger.created', 'payment.recorded', 'payment.refunded',
            'subscription.cancelled', 'upgrade.rolled_back'
        """
        try:
            self.db.insert(ACTIVITY_LOGS, {
                "id": new_id(),
                "version": 0,
                "user_id": str(user_id) if user_id else None,
                "action": action,
                "entity_type": entity_type,
                "entity_id": str(entity_id) if entity_id else None,
                "metadata": metadata or {},
                "created_at": utcnow().isoformat(),
            })
        except Exception as e:
            logger.error(f"Failed to write activity log [{action}]: {e}")
