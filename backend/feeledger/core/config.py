# ============================================================
# feeledger/core/config.py
#
# All configuration comes from environment variables (or a
# .env file next to backend/ when running locally).
#
# Usage anywhere in the service:
#   from feeledger.core.config import settings
#   print(settings.RAZORPAY_KEY_ID)
# ============================================================

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
from pathlib import Path


class Settings(BaseSettings):
    """
    Settings are read once at import time. In Docker / VPS, set these
    as real environment variables; locally a .env file is enough.
    """

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── App Identity ─────────────────────────────────────────
    APP_NAME: str = "FeeLedger"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"        # development | production
    DEBUG: bool = False
    # Keep production logs at INFO and suppress verbose HTTP wire logs by default.
    HTTP_CLIENT_DEBUG_LOGS: bool = False

    # ── API Settings ─────────────────────────────────────────
    API_PREFIX: str = "/api/v1"
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # ── Storage ──────────────────────────────────────────────
    # supabase → shared Postgres through PostgREST (production)
    # memory   → process-local store (tests, local demos)
    STORAGE_BACKEND: str = "supabase"
    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_KEY: Optional[str] = None   # NEVER expose to a frontend
    DB_SCHEMA: str = "feeledger"

    # Read-modify-write attempts before a ledger write gives up.
    LEDGER_WRITE_MAX_ATTEMPTS: int = 5

    # ── JWT Authentication ────────────────────────────────────
    # Tokens are issued by the identity service; we only verify them.
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 8

    # ── Razorpay ─────────────────────────────────────────────
    RAZORPAY_KEY_ID: str                    # rzp_live_xxx or rzp_test_xxx
    RAZORPAY_KEY_SECRET: str
    RAZORPAY_WEBHOOK_SECRET: str            # Set in Razorpay dashboard → Webhooks
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com/v1"
    CURRENCY: str = "INR"

    # ── Ledger / receipts ────────────────────────────────────
    RECEIPT_PREFIX: str = "SF"              # printed as SF-2024000042
    DEFAULT_DUE_DAYS: int = 30              # due date for generated ledgers

    # ── Installment plans ────────────────────────────────────
    SUBSCRIPTION_MAX_RETRIES: int = 3
    SUBSCRIPTION_RETRY_DELAY_HOURS: int = 24

    # Idempotency cache TTL (order replay / webhook event replay protection).
    IDEMPOTENCY_TTL_SECONDS: int = 600
    # Shared local store so idempotency works across multiple workers.
    IDEMPOTENCY_DB_PATH: str = "/tmp/feeledger_idempotency.db"

    # ── n8n Automation (notifications) ───────────────────────
    N8N_WEBHOOK_BASE_URL: str = "http://n8n:5678/webhook"
    N8N_NOTIFICATION_WEBHOOK: str = "fee-notification"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


# Single instance: import this everywhere
settings = Settings()
