from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from feeledger.core.errors import GatewayError
from feeledger.utils.gateway import RazorpayGateway, from_paise, to_paise

from conftest import sign_checkout, sign_webhook

pytestmark = pytest.mark.anyio


def test_paise_conversion():
    assert to_paise(Decimal("2500")) == 250000
    assert to_paise(Decimal("10.005")) == 1001
    assert from_paise(150000) == Decimal("1500.00")
    assert from_paise("99") == Decimal("0.99")


def test_checkout_signature(gateway):
    good = sign_checkout("order_1", "pay_1")
    assert gateway.verify_signature("order_1", "pay_1", good) is True
    assert gateway.verify_signature("order_1", "pay_2", good) is False
    assert gateway.verify_signature("order_1", "pay_1", None) is False


def test_webhook_signature(gateway):
    raw = b'{"event":"subscription.charged"}'
    assert gateway.verify_webhook_signature(raw, sign_webhook(raw)) is True
    assert gateway.verify_webhook_signature(raw + b" ", sign_webhook(raw)) is False


async def test_create_order_sends_paise_and_returns_rupees(gateway, razorpay):
    order = await gateway.create_order(Decimal("1234.50"), "INR", "ledger-1", {"ledger_id": "l1"})

    assert order == {"order_id": "order_0001", "amount": Decimal("1234.50"), "currency": "INR"}
    method, path, body = razorpay.calls[0]
    assert (method, path) == ("POST", "/orders")
    assert body["amount"] == 123450
    assert body["notes"] == {"ledger_id": "l1"}


async def test_get_order_reads_back_notes(gateway, razorpay):
    created = await gateway.create_order(Decimal("100"), "INR", "r1", {"ledger_id": "l1"})
    bare = await gateway.create_order(Decimal("100"), "INR", "r2")
    assert razorpay.orders[bare["order_id"]]["notes"] == []

    assert (await gateway.get_order(created["order_id"]))["notes"] == {"ledger_id": "l1"}
    assert (await gateway.get_order(bare["order_id"]))["notes"] == {}


async def test_get_payment(gateway, razorpay):
    razorpay.payments["pay_9"] = {"status": "captured", "amount": 50000, "order_id": "order_9"}
    payment = await gateway.get_payment("pay_9")
    assert payment["status"] == "captured"
    assert payment["amount"] == Decimal("500.00")


async def test_quarterly_plan_is_every_three_months(gateway, razorpay):
    await gateway.create_plan("quarterly", Decimal("5000"), "Fees")
    body = razorpay.calls[0][2]
    assert (body["period"], body["interval"]) == ("monthly", 3)
    assert body["item"]["amount"] == 500000


async def test_subscription_start_is_unix_seconds(gateway, razorpay):
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    result = await gateway.create_subscription("plan_1", "cust_1", 3, start)
    assert result["subscription_id"] == "sub_0001"
    assert razorpay.calls[0][2]["start_at"] == 1704067200


async def test_rejection_becomes_gateway_error(gateway, razorpay):
    razorpay.fail_paths.add("/orders")
    with pytest.raises(GatewayError) as exc:
        await gateway.create_order(Decimal("10"), "INR", "r")
    assert exc.value.message == "Rejected by gateway"
    assert exc.value.detail["status_code"] == 400


async def test_network_failure_becomes_gateway_error():
    def down(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    gateway = RazorpayGateway(key_id="k", key_secret="s", webhook_secret="w",
                              base_url="https://api.razorpay.com/v1",
                              transport=httpx.MockTransport(down))
    with pytest.raises(GatewayError):
        await gateway.get_payment("pay_1")
