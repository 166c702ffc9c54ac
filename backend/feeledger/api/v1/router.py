# feeledger/api/v1/router.py
# Registers all endpoint routers under /api/v1

from fastapi import APIRouter

from feeledger.api.v1.endpoints import (
    ledgers,
    payments,
    subscriptions,
    upgrades,
    webhooks,       # gateway callbacks; HMAC signature instead of a JWT
)

api_router = APIRouter()

api_router.include_router(ledgers.router)
api_router.include_router(payments.router)
api_router.include_router(subscriptions.router)
api_router.include_router(upgrades.router)
api_router.include_router(webhooks.router)
