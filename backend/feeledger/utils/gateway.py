# ============================================================
# feeledger/utils/gateway.py
#
# Razorpay adapter. Everything the ledger engine needs from the
# gateway goes through this class:
#
#   orders / payments / refunds      → PaymentRecorder
#   plans / customers / subscriptions → SubscriptionEngine
#   signature checks                  → checkout + webhooks
#
# Amounts cross this boundary in rupees (Decimal) and are
# converted to paise here, never anywhere else.
#
# LEARNING NOTE: the constructor accepts an httpx transport so
# tests can plug in httpx.MockTransport and never hit the network.
# ============================================================

import hashlib
import hmac
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from feeledger.core.config import settings
from feeledger.core.errors import GatewayError
from feeledger.schemas.common import money

logger = logging.getLogger(__name__)

# Razorpay bills quarterly plans as "every 3 months".
PLAN_PERIODS = {
    "monthly": ("monthly", 1),
    "quarterly": ("monthly", 3),
    "yearly": ("yearly", 1),
}


def to_paise(amount: Decimal) -> int:
    return int(money(amount) * 100)


def from_paise(value: Any) -> Decimal:
    return money(Decimal(str(value)) / 100)


def _hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class RazorpayGateway:

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 15.0,
    ):
        self.key_id = key_id or settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret or settings.RAZORPAY_KEY_SECRET
        self.webhook_secret = webhook_secret or settings.RAZORPAY_WEBHOOK_SECRET
        self.base_url = (base_url or settings.RAZORPAY_BASE_URL).rstrip("/")
        self._transport = transport
        self._timeout = timeout

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.key_id, self.key_secret),
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.request(method, path, json=json)
        except httpx.HTTPError as e:
            logger.error(f"Razorpay {method} {path} failed: {e}")
            raise GatewayError(f"Payment gateway unreachable: {e}")

        if resp.status_code >= 400:
            try:
                description = resp.json().get("error", {}).get("description")
            except ValueError:
                description = resp.text
            logger.error(f"Razorpay {method} {path} returned {resp.status_code}: {description}")
            raise GatewayError(
                description or "Payment gateway rejected the request",
                detail={"status_code": resp.status_code, "path": path},
            )
        return resp.json()

    # ── Orders & payments ────────────────────────────────────
    async def create_order(
        self, amount: Decimal, currency: str, receipt_ref: str, metadata: Optional[dict] = None
    ) -> Dict[str, Any]:
        data = await self._request("POST", "/orders", json={
            "amount": to_paise(amount),
            "currency": currency,
            "receipt": receipt_ref,
            "notes": metadata or {},
        })
        return {"order_id": data["id"], "amount": from_paise(data["amount"]),
                "currency": data.get("currency", currency)}

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/orders/{order_id}")
        notes = data.get("notes")
        return {
            "order_id": data["id"],
            "amount": from_paise(data.get("amount", 0)),
            "status": data.get("status"),
            # Razorpay sends an empty list when an order has no notes
            "notes": notes if isinstance(notes, dict) else {},
        }

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Checkout signature: HMAC-SHA256(order_id|payment_id, key_secret)."""
        expected = _hmac_sha256(self.key_secret, f"{order_id}|{payment_id}".encode())
        return hmac.compare_digest(expected, signature or "")

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        """Webhook signature: HMAC-SHA256(raw body, webhook_secret)."""
        expected = _hmac_sha256(self.webhook_secret, raw_body)
        return hmac.compare_digest(expected, signature or "")

    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/payments/{payment_id}")
        return {
            "id": data["id"],
            "status": data.get("status"),
            "amount": from_paise(data.get("amount", 0)),
            "order_id": data.get("order_id"),
            "method": data.get("method"),
        }

    async def create_refund(
        self, payment_id: str, amount: Decimal, meta: Optional[dict] = None
    ) -> Dict[str, Any]:
        data = await self._request("POST", f"/payments/{payment_id}/refund", json={
            "amount": to_paise(amount),
            "notes": meta or {},
        })
        return {"refund_id": data["id"], "status": data.get("status")}

    # ── Subscriptions ────────────────────────────────────────
    async def create_plan(self, plan_type: str, amount: Decimal, name: str) -> str:
        period, interval = PLAN_PERIODS[getattr(plan_type, "value", plan_type)]
        data = await self._request("POST", "/plans", json={
            "period": period,
            "interval": interval,
            "item": {"name": name, "amount": to_paise(amount), "currency": settings.CURRENCY},
        })
        return data["id"]

    async def create_customer(
        self, name: Optional[str], email: Optional[str], phone: Optional[str]
    ) -> str:
        data = await self._request("POST", "/customers", json={
            "name": name,
            "email": email,
            "contact": phone,
            "fail_existing": "0",       # return the existing customer instead of failing
        })
        return data["id"]

    async def create_subscription(
        self,
        plan_id: str,
        customer_id: str,
        total_count: int,
        start_at: datetime,
        notes: Optional[dict] = None,
    ) -> Dict[str, Any]:
        data = await self._request("POST", "/subscriptions", json={
            "plan_id": plan_id,
            "customer_id": customer_id,
            "total_count": total_count,
            "start_at": int(start_at.timestamp()),
            "customer_notify": 1,
            "notes": notes or {},
        })
        return {"subscription_id": data["id"], "short_url": data.get("short_url"),
                "status": data.get("status")}

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/subscriptions/{subscription_id}/cancel",
            json={"cancel_at_cycle_end": 0},
        )
