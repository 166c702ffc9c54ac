import hashlib
import hmac
import json
import os
import sys
import tempfile
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import httpx
import pytest


# Ensure `import feeledger...` resolves when tests run from repo root.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))


# Minimal defaults so settings can initialize in test environments.
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("N8N_WEBHOOK_BASE_URL", "http://n8n.test/webhook")
os.environ.setdefault(
    "IDEMPOTENCY_DB_PATH", str(Path(tempfile.gettempdir()) / "feeledger_test_idempotency.db")
)

from feeledger.core.memory import InMemoryFeeDB  # noqa: E402
from feeledger.core.database import COURSES, FEE_TEMPLATES, LEDGERS, STUDENTS  # noqa: E402
from feeledger.schemas.ledger import LedgerSeed, LedgerSeedItem, ServiceName  # noqa: E402
from feeledger.schemas.templates import FeeTemplate, TemplateItem  # noqa: E402
from feeledger.schemas.upgrades import Course, Student  # noqa: E402
from feeledger.services.container import build_services  # noqa: E402
from feeledger.services.ledger_service import build_ledger  # noqa: E402
from feeledger.services.notification_service import N8nNotifier  # noqa: E402
from feeledger.utils.dates import utcnow  # noqa: E402
from feeledger.utils.gateway import RazorpayGateway  # noqa: E402
from feeledger.utils.idempotency import IdempotencyStore  # noqa: E402

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


def sign_checkout(order_id: str, payment_id: str) -> str:
    return hmac.new(KEY_SECRET.encode(), f"{order_id}|{payment_id}".encode(),
                    hashlib.sha256).hexdigest()


def sign_webhook(raw_body: bytes) -> str:
    return hmac.new(WEBHOOK_SECRET.encode(), raw_body, hashlib.sha256).hexdigest()


class FakeRazorpay:
    """
    Just enough of the Razorpay REST API for the adapter. Every call
    is recorded; paths listed in `fail_paths` answer 400.
    """

    def __init__(self):
        self.calls = []
        self.payments = {}          # payment id → {"status", "amount" (paise), ...}
        self.orders = {}            # order id → order as created
        self.fail_paths = set()
        self._seq = 0

    def _id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq:04d}"

    def called(self, method: str, path_prefix: str) -> int:
        return sum(1 for m, p, _ in self.calls if m == method and p.startswith(path_prefix))

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v1")
        body = json.loads(request.content) if request.content else {}
        self.calls.append((request.method, path, body))

        if any(path.startswith(p) for p in self.fail_paths):
            return httpx.Response(400, json={"error": {"description": "Rejected by gateway"}})

        parts = path.strip("/").split("/")
        if path == "/orders":
            order = {"id": self._id("order"), "amount": body["amount"],
                     "currency": body["currency"], "status": "created",
                     "notes": body.get("notes") or []}
            self.orders[order["id"]] = order
            return httpx.Response(200, json=order)
        if parts[0] == "orders" and len(parts) == 2:
            order = self.orders.get(parts[1])
            if order is None:
                return httpx.Response(404, json={"error": {"description": "The id provided does not exist"}})
            return httpx.Response(200, json=order)
        if parts[0] == "payments" and len(parts) == 3 and parts[2] == "refund":
            return httpx.Response(200, json={"id": self._id("rfnd"), "status": "processed"})
        if parts[0] == "payments" and len(parts) == 2:
            info = self.payments.get(parts[1])
            if info is None:
                return httpx.Response(404, json={"error": {"description": "The id provided does not exist"}})
            return httpx.Response(200, json={"id": parts[1], **info})
        if path == "/plans":
            return httpx.Response(200, json={"id": self._id("plan")})
        if path == "/customers":
            return httpx.Response(200, json={"id": self._id("cust")})
        if path == "/subscriptions":
            sub_id = self._id("sub")
            return httpx.Response(200, json={
                "id": sub_id, "short_url": f"https://rzp.io/i/{sub_id}", "status": "created",
            })
        if parts[0] == "subscriptions" and len(parts) == 3 and parts[2] == "cancel":
            return httpx.Response(200, json={"id": parts[1], "status": "cancelled"})
        return httpx.Response(404, json={"error": {"description": f"No route {path}"}})


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db():
    return InMemoryFeeDB()


@pytest.fixture
def razorpay():
    return FakeRazorpay()


@pytest.fixture
def gateway(razorpay):
    return RazorpayGateway(
        key_id="rzp_test_key",
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        base_url="https://api.razorpay.com/v1",
        transport=httpx.MockTransport(razorpay.handler),
    )


@pytest.fixture
def sent():
    """Every notification posted to n8n, as JSON."""
    return []


@pytest.fixture
def notifier(sent):
    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    return N8nNotifier(base_url="http://n8n.test/webhook", webhook="fee-notification",
                       transport=httpx.MockTransport(handler))


@pytest.fixture
def idempotency(tmp_path):
    return IdempotencyStore(db_path=str(tmp_path / "idempotency.sqlite3"), ttl_seconds=600)


@pytest.fixture
def services(db, gateway, notifier, idempotency):
    return build_services(db=db, gateway=gateway, notifier=notifier, idempotency=idempotency)


# ── Seed helpers ─────────────────────────────────────────────
@pytest.fixture
def course(db):
    c = Course(name="B.Tech Computer Science", code="BTCS", total_semesters=8)
    db.insert(COURSES, c.to_row())
    return c


@pytest.fixture
def make_student(db, course):
    def _make(semester=1, academic_year="2024-25", **overrides):
        data = {
            "first_name": "Asha",
            "last_name": "Verma",
            "email": "asha@example.com",
            "phone": "+919800000001",
            "course_id": course.id,
            "current_semester": semester,
            "academic_year": academic_year,
        }
        data.update(overrides)
        student = Student(**data)
        db.insert(STUDENTS, student.to_row())
        return student
    return _make


@pytest.fixture
def make_template(db, course):
    def _make(semester, academic_year="2024-25", items=None, course_id=None):
        template = FeeTemplate(
            course_id=course_id or course.id,
            semester=semester,
            academic_year=academic_year,
            template_name=f"Semester {semester} fees",
            fee_items=items if items is not None else [
                TemplateItem(name="Tuition", amount=Decimal("40000")),
                TemplateItem(name="Lab", amount=Decimal("5000")),
                TemplateItem(name="Hostel Fee", amount=Decimal("20000"),
                             is_optional=True, service=ServiceName.hostel),
            ],
        )
        db.insert(FEE_TEMPLATES, template.to_row())
        return template
    return _make


@pytest.fixture
def make_ledger(db):
    """
    Store a ledger straight from (name, amount) pairs. Due in 30 days
    unless `due_date` is given.
    """
    def _make(items=(("Tuition", "10000"), ("Lab", "5000")), student_id="student-1",
              semester=1, academic_year="2024-25", due_date=None):
        seed = LedgerSeed(
            student_id=student_id,
            semester=semester,
            academic_year=academic_year,
            fee_items=[
                LedgerSeedItem(name=name, original_amount=Decimal(amount))
                for name, amount in items
            ],
        )
        ledger = build_ledger(seed, "accountant-1",
                              due_date=due_date or utcnow() + timedelta(days=30))
        db.insert(LEDGERS, ledger.to_row())
        return ledger
    return _make
