import hashlib
import hmac
import json

import httpx
import pytest
from fastapi import HTTPException

from shutupnrave.payments import MockPay, Paystack, PaymentError


async def test_mockpay_initialize_and_verify(mockpay):
    init = await mockpay.initialize("ORD-2025-ABC123", "a@b.co", 3675.0,
                                    {}, "http://x/cb")
    assert init == {
        "reference": "ORD-2025-ABC123",
        "payment_url": "/mockpay/ORD-2025-ABC123",
        "access_code": "mock_ORD-2025-ABC123",
    }
    assert not await mockpay.verify("ORD-2025-ABC123")
    mockpay.emit("ORD-2025-ABC123", "succeeded")
    assert await mockpay.verify("ORD-2025-ABC123")


async def test_mockpay_forgets_oldest_outcomes():
    pay = MockPay(secret="s", max_outcomes=2)
    pay.emit("ORD-1", "succeeded")
    pay.emit("ORD-2", "failed")
    pay.emit("ORD-1", "succeeded")
    pay.emit("ORD-3", "succeeded")
    assert list(pay.outcomes) == ["ORD-1", "ORD-3"]
    assert not await pay.verify("ORD-2")
    assert await pay.verify("ORD-1")


def test_mockpay_webhook_signature(mockpay):
    payload = json.dumps({"type": "payment.failed",
                          "reference": "ORD-1"}).encode()
    event = mockpay.verify_webhook(
        payload, {"x-mockpay-signature": mockpay.sign(payload)}
    )
    assert mockpay.event_kind(event) == "failed"
    assert mockpay.event_reference(event) == "ORD-1"
    assert mockpay.outcomes["ORD-1"] == "failed"

    with pytest.raises(HTTPException) as exc:
        MockPay(secret="other").verify_webhook(
            payload, {"x-mockpay-signature": mockpay.sign(payload)}
        )
    assert exc.value.status_code == 400


def _paystack(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Paystack(http, "sk_test_123", base_url="https://paystack.test")


async def test_paystack_initialize_sends_kobo():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {
            "authorization_url": "https://checkout.paystack.com/abc",
            "access_code": "abc",
            "reference": "ORD-1",
        }})

    init = await _paystack(handler).initialize(
        "ORD-1", "a@b.co", 3675.5, {"orderId": "ORD-1"}, "http://x/cb"
    )
    assert init["payment_url"] == "https://checkout.paystack.com/abc"
    assert seen["auth"] == "Bearer sk_test_123"
    assert seen["body"]["amount"] == 367550
    assert seen["body"]["currency"] == "NGN"


async def test_paystack_initialize_error():
    adapter = _paystack(lambda request: httpx.Response(401, json={}))
    with pytest.raises(PaymentError):
        await adapter.initialize("ORD-1", "a@b.co", 10, {}, "http://x/cb")


@pytest.mark.parametrize("status, expected", [
    ("success", True),
    ("abandoned", False),
])
async def test_paystack_verify(status, expected):
    def handler(request):
        assert request.url.path == "/transaction/verify/ORD-1"
        return httpx.Response(200, json={"data": {"status": status}})

    assert await _paystack(handler).verify("ORD-1") is expected


def test_paystack_webhook():
    adapter = _paystack(lambda request: httpx.Response(200))
    payload = json.dumps({"event": "charge.success",
                          "data": {"reference": "ORD-1"}}).encode()
    sig = hmac.new(b"sk_test_123", payload, hashlib.sha512).hexdigest()
    event = adapter.verify_webhook(payload, {"x-paystack-signature": sig})
    assert adapter.event_kind(event) == "succeeded"
    assert adapter.event_reference(event) == "ORD-1"
    assert adapter.event_kind({"event": "transfer.success"}) == "ignored"

    with pytest.raises(HTTPException):
        adapter.verify_webhook(payload, {"x-paystack-signature": "0" * 128})
