# feeledger/schemas/notifications.py

from pydantic import BaseModel
from typing import Optional
from enum import Enum


class NotificationType(str, Enum):
    fee_assigned               = "fee_assigned"
    payment_received           = "payment_received"
    fine_added                 = "fine_added"
    discount_applied           = "discount_applied"
    semester_upgrade           = "semester_upgrade"
    subscription_status_change = "subscription_status_change"


class RelatedEntity(BaseModel):
    entity_type: str                        # student_fee | payment | semester_upgrade | subscription
    entity_id: Optional[str] = None


class Notification(BaseModel):
    recipient_id: str
    type: NotificationType
    title: str
    message: str
    related_entity: Optional[RelatedEntity] = None
