# feeledger/api/v1/endpoints/webhooks.py
#
# POST /webhooks/razorpay: no JWT. The HMAC of the raw body
# (x-razorpay-signature) IS the credential, so the body must be
# read as bytes before anything parses it.
#
# Status codes are what the gateway acts on:
#   200 → processed / ignored / duplicate, do not redeliver
#   400 → bad signature or body, do not redeliver
#   500 → processing failed, redeliver later

from typing import Optional
from fastapi import APIRouter, Depends, Header, Request

from feeledger.api.deps import get_services
from feeledger.schemas.common import APIResponse
from feeledger.schemas.subscriptions import WebhookOutcome
from feeledger.services.container import Services

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/razorpay", response_model=APIResponse[WebhookOutcome])
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(default=None),
    x_razorpay_event_id: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
):
    raw_body = await request.body()
    outcome = await services.subscriptions.handle_webhook(
        raw_body, x_razorpay_signature, x_razorpay_event_id,
    )
    return APIResponse(data=outcome, message=outcome.status)
