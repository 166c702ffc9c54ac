import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from feeledger.core.security import TokenData, create_access_token
from feeledger.main import create_app

from conftest import sign_webhook


def _auth(user_id="admin-1", role="admin"):
    token = create_access_token(TokenData(
        user_id=user_id, role=role, email=f"{user_id}@example.com", full_name=user_id,
    ))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(services):
    with TestClient(create_app(services), raise_server_exceptions=False) as c:
        yield c


def test_health_and_root(client):
    assert client.get("/health").json()["status"] == "healthy"
    assert "version" in client.get("/").json()


def test_health_without_services_is_unhealthy():
    app = create_app()
    # No lifespan: nothing has built the services yet
    resp = TestClient(app).get("/health")
    assert resp.status_code == 503


def test_protected_routes_need_a_token(client, make_ledger):
    ledger = make_ledger()
    assert client.get(f"/api/v1/ledgers/{ledger.id}").status_code in (401, 403)


def test_staff_records_payment(client, make_ledger):
    ledger = make_ledger()
    resp = client.post(
        "/api/v1/payments",
        json={"ledger_id": ledger.id, "amount": "12000", "method": "cash"},
        headers=_auth("acc-1", "accountant"),
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["message"].startswith("Payment recorded. Receipt SF-")
    assert Decimal(body["data"]["amount"]) == Decimal("12000")

    summary = client.get(f"/api/v1/ledgers/{ledger.id}/summary", headers=_auth()).json()["data"]
    assert Decimal(summary["balance_due"]) == Decimal("3000")


def test_student_cannot_record_payments(client, make_ledger):
    ledger = make_ledger(student_id="student-1")
    resp = client.post(
        "/api/v1/payments",
        json={"ledger_id": ledger.id, "amount": "100"},
        headers=_auth("student-1", "student"),
    )
    assert resp.status_code == 403


def test_student_reads_only_their_own_ledger(client, make_ledger):
    mine = make_ledger(student_id="student-1")
    theirs = make_ledger(student_id="student-2")
    headers = _auth("student-1", "student")

    assert client.get(f"/api/v1/ledgers/{mine.id}", headers=headers).status_code == 200
    assert client.get(f"/api/v1/ledgers/{theirs.id}", headers=headers).status_code == 403


def test_domain_errors_use_the_error_envelope(client, make_ledger):
    missing = client.get("/api/v1/ledgers/nope", headers=_auth())
    assert missing.status_code == 404
    assert missing.json() == {
        "success": False, "message": "Fee ledger not found", "detail": {"ledger_id": "nope"},
    }

    ledger = make_ledger()
    over = client.post(
        "/api/v1/payments",
        json={"ledger_id": ledger.id, "amount": "99999"},
        headers=_auth(),
    )
    assert over.status_code == 400
    assert over.json()["success"] is False


def test_payment_stats_are_staff_only(client, make_ledger):
    ledger = make_ledger(student_id="student-1")
    staff = _auth("acc-1", "accountant")
    client.post("/api/v1/payments",
                json={"ledger_id": ledger.id, "amount": "2500", "method": "upi"}, headers=staff)

    resp = client.get("/api/v1/payments/stats", params={"academic_year": "2024-25"}, headers=staff)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["total_payments"] == 1
    assert Decimal(data["by_method"]["upi"]["total_amount"]) == Decimal("2500")

    student = _auth("student-1", "student")
    assert client.get("/api/v1/payments/stats", headers=student).status_code == 403


def test_request_validation_uses_the_error_envelope(client):
    resp = client.post("/api/v1/payments", json={"amount": "-5"}, headers=_auth())
    assert resp.status_code == 422
    body = resp.json()
    assert body["success"] is False
    assert body["message"] == "Validation error"
    assert any("ledger_id" in line for line in body["detail"])


def test_receipt_pdf_download(client, make_ledger):
    ledger = make_ledger()
    payment = client.post(
        "/api/v1/payments", json={"ledger_id": ledger.id, "amount": "500"}, headers=_auth(),
    ).json()["data"]

    resp = client.get(f"/api/v1/payments/{payment['id']}/receipt.pdf", headers=_auth())
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/pdf"
    assert f'filename="SF-{payment["receipt_number"]}.pdf"' in resp.headers["content-disposition"]
    assert resp.content.startswith(b"%PDF")


def _create_plan(client, make_student, make_ledger):
    student = make_student()
    ledger = make_ledger(student_id=student.id)
    resp = client.post(
        "/api/v1/subscriptions",
        json={"ledger_id": ledger.id, "plan_type": "monthly", "total_amount": "3000",
              "installment_amount": "1000", "total_installments": 3,
              "start_date": "2024-01-01T00:00:00+00:00"},
        headers=_auth(),
    )
    assert resp.status_code == 201
    return resp.json()["data"]


def _post_webhook(client, body, event_id, signature=None):
    raw = json.dumps(body).encode()
    return client.post(
        "/api/v1/webhooks/razorpay",
        content=raw,
        headers={"X-Razorpay-Signature": signature or sign_webhook(raw),
                 "X-Razorpay-Event-Id": event_id,
                 "Content-Type": "application/json"},
    )


def _charged(gateway_sub_id, payment_id):
    return {
        "event": "subscription.charged",
        "payload": {
            "subscription": {"entity": {"id": gateway_sub_id}},
            "payment": {"entity": {"id": payment_id, "amount": 100000, "status": "captured"}},
        },
    }


def test_webhook_charge_is_processed_once(client, make_student, make_ledger):
    plan = _create_plan(client, make_student, make_ledger)
    body = _charged(plan["gateway_subscription_id"], "pay_1")

    first = _post_webhook(client, body, "evt_1")
    assert first.status_code == 200
    assert first.json()["data"]["status"] == "processed"

    again = _post_webhook(client, body, "evt_1")
    assert again.json()["data"]["status"] == "duplicate"

    sub = client.get(f"/api/v1/subscriptions/{plan['id']}", headers=_auth()).json()["data"]
    assert sub["completed_installments"] == 1


def test_webhook_with_bad_signature_is_refused(client):
    resp = _post_webhook(client, {"event": "subscription.activated", "payload": {}},
                         "evt_x", signature="forged")
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_webhook_processing_failure_asks_for_redelivery(client, services, make_student,
                                                        make_ledger, monkeypatch):
    plan = _create_plan(client, make_student, make_ledger)

    async def broken(*args, **kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(services.payments, "record", broken)
    resp = _post_webhook(client, _charged(plan["gateway_subscription_id"], "pay_9"), "evt_9")
    assert resp.status_code == 500

    monkeypatch.undo()
    retried = _post_webhook(client, _charged(plan["gateway_subscription_id"], "pay_9"), "evt_9")
    assert retried.json()["data"]["status"] == "processed"


def test_upgrade_endpoint_is_admin_only(client, make_student, make_template):
    student = make_student(semester=2)
    make_template(3)
    url = f"/api/v1/upgrades/students/{student.id}"

    assert client.post(url, json={}, headers=_auth("acc-1", "accountant")).status_code == 403

    resp = client.post(url, json={"notes": "Passed all papers"}, headers=_auth())
    assert resp.status_code == 201
    assert resp.json()["data"]["to_semester"] == 3
