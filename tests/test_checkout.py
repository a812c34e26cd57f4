import re

import pytest
from sqlalchemy import select

from shutupnrave.model import AffiliateCommission, Discount, Order
from shutupnrave.model.orders import (
    deactivate_ticket, generate_order_id, get_order, initialize_payment,
    mark_payment_failed, price_order, verify_and_deactivate_ticket,
    verify_payment,
)
from shutupnrave.model.orm import (
    ORDER_CONFIRMED, ORDER_PENDING, PAYMENT_FAILED, PAYMENT_PAID,
    PAYMENT_PENDING,
)
from shutupnrave.payments import MockPay, PaymentError

USER = {"full_name": "Ada Lovelace", "phone": "08012345678",
        "email": "Ada@Example.com"}


def test_order_id_format():
    assert re.fullmatch(r"ORD-\d{4}-[A-Z0-9]{6}", generate_order_id())


def test_price_order_applies_discount_before_fee():
    amounts = price_order(15000, 2, discount_rate=0.1)
    assert amounts["subtotal"] == 30000
    assert amounts["discount_amount"] == 3000
    assert amounts["processing_fee"] == 1350
    assert amounts["total"] == 28350


@pytest.mark.parametrize("field, value, message", [
    ("full_name", "Ada", "Full name must be at least 4 characters"),
    ("phone", "0801234567", "Phone number must be at least 11 digits"),
    ("phone", "080123456789", "Phone number must be maximum 11 digits"),
    ("email", "not-an-email", "Please enter a valid email address"),
])
async def test_checkout_validation(db, mockpay, field, value, message):
    user = dict(USER, **{field: value})
    result = await initialize_payment(
        db, mockpay, user, {"ticket_type": "Solo Vibes", "quantity": 1}
    )
    assert result == {"success": False, "error": message}


async def test_checkout_rejects_bad_quantity(db, mockpay):
    result = await initialize_payment(
        db, mockpay, USER, {"ticket_type": "Solo Vibes", "quantity": 6}
    )
    assert not result["success"]
    assert "Quantity" in result["error"]


async def test_checkout_creates_pending_order(db, mockpay):
    result = await initialize_payment(
        db, mockpay, USER, {"ticket_type": "Geng Energy", "quantity": 2}
    )
    assert result["success"]
    data = result["data"]
    assert data["payment_url"] == f"/mockpay/{data['order_id']}"
    assert data["reference"] == data["order_id"]

    order = (await db.execute(
        select(Order).where(Order.order_id == data["order_id"])
    )).scalar_one()
    assert order.status == ORDER_PENDING
    assert order.payment_status == PAYMENT_PENDING
    assert order.subtotal == 30000
    assert order.processing_fee == 1500
    assert order.total == 31500
    assert order.user.email == "ada@example.com"
    assert order.items[0].quantity == 2
    assert order.affiliate_id is None


async def test_checkout_with_discount_and_referral(db, mockpay,
                                                  make_affiliate):
    affiliate = await make_affiliate(ref_code="PROMOABC123")
    db.add(Discount(code="RAVE10", percentage=0.1))
    await db.commit()

    result = await initialize_payment(
        db, mockpay, USER, {"ticket_type": "Solo Vibes", "quantity": 1},
        affiliate_ref="promoabc123", discount_code="rave10",
    )
    assert result["success"]
    order = (await get_order(db, result["data"]["order_id"]))["order"]
    assert order.affiliate_id == affiliate.id
    assert order.discount_code == "RAVE10"
    assert order.discount_amount == 350
    assert order.total == round(3150 * 1.05, 2)


async def test_checkout_rejects_unknown_discount(db, mockpay):
    result = await initialize_payment(
        db, mockpay, USER, {"ticket_type": "Solo Vibes", "quantity": 1},
        discount_code="NOPE",
    )
    assert result == {"success": False,
                      "error": "Invalid or inactive discount code"}


async def test_inactive_affiliate_is_not_attributed(db, mockpay,
                                                    make_affiliate):
    await make_affiliate(ref_code="SLEEPY0001", status="INACTIVE")
    result = await initialize_payment(
        db, mockpay, USER, {"ticket_type": "Solo Vibes", "quantity": 1},
        affiliate_ref="SLEEPY0001",
    )
    order = (await get_order(db, result["data"]["order_id"]))["order"]
    assert order.affiliate_id is None


async def test_verify_payment_confirms_and_notifies(db, mockpay, mailer,
                                                   make_affiliate,
                                                   monkeypatch):
    monkeypatch.setattr("shutupnrave.model.orders.ADMIN_NOTIFICATION_EMAIL",
                        "ops@shutupnrave.com")
    await make_affiliate(ref_code="PROMOABC123", rate=0.1)
    db.add(Discount(code="RAVE10", percentage=0.1))
    await db.commit()
    init = await initialize_payment(
        db, mockpay, USER, {"ticket_type": "Geng Energy", "quantity": 1},
        affiliate_ref="PROMOABC123", discount_code="RAVE10",
    )
    reference = init["data"]["reference"]
    mockpay.emit(reference, "succeeded")

    result = await verify_payment(db, mockpay, mailer, reference)
    assert result["success"]
    order = result["order"]
    assert order.status == ORDER_CONFIRMED
    assert order.payment_status == PAYMENT_PAID

    discount = (await db.execute(
        select(Discount).where(Discount.code == "RAVE10")
    )).scalar_one()
    await db.refresh(discount)
    assert discount.usage_count == 1

    commissions = (await db.execute(select(AffiliateCommission))).scalars()
    assert [c.commission_amount for c in commissions] == [1500.0]

    recipients = [m["to"][0] for m in mailer.sent]
    assert recipients == ["ada@example.com", "ops@shutupnrave.com",
                          "promoter@example.com"]
    assert reference in mailer.sent[0]["html"]


async def test_verify_payment_is_idempotent(db, mockpay, mailer):
    init = await initialize_payment(
        db, mockpay, USER, {"ticket_type": "Solo Vibes", "quantity": 1}
    )
    reference = init["data"]["reference"]
    mockpay.emit(reference, "succeeded")

    assert (await verify_payment(db, mockpay, mailer, reference))["success"]
    sent = len(mailer.sent)
    again = await verify_payment(db, mockpay, mailer, reference)
    assert again["success"]
    assert len(mailer.sent) == sent


class WebhookDuringVerify(MockPay):
    """Lets the webhook confirm the order while the success page is still
    waiting on the provider."""

    def __init__(self, session_factory, mailer, provider_error=False):
        super().__init__(secret="test-mock-secret")
        self.session_factory = session_factory
        self.mailer = mailer
        self.provider_error = provider_error
        self.fired = False

    async def verify(self, reference):
        if not self.fired:
            self.fired = True
            async with self.session_factory() as other:
                result = await verify_payment(other, self, self.mailer,
                                              reference)
                assert result["success"]
            if self.provider_error:
                raise PaymentError("Payment verification failed")
        return await super().verify(reference)


async def _discounted_checkout(db, adapter):
    db.add(Discount(code="RAVE10", percentage=0.1))
    await db.commit()
    init = await initialize_payment(
        db, adapter, USER, {"ticket_type": "Solo Vibes", "quantity": 1},
        discount_code="RAVE10",
    )
    reference = init["data"]["reference"]
    adapter.emit(reference, "succeeded")
    return reference


async def _final_state(session_factory, reference):
    async with session_factory() as fresh:
        order = (await get_order(fresh, reference))["order"]
        discount = (await fresh.execute(
            select(Discount).where(Discount.code == "RAVE10")
        )).scalar_one()
        return order, discount.usage_count


async def test_concurrent_verification_confirms_once(db, session_factory,
                                                    mailer):
    adapter = WebhookDuringVerify(session_factory, mailer)
    reference = await _discounted_checkout(db, adapter)

    result = await verify_payment(db, adapter, mailer, reference)
    assert result["success"]
    assert result["order"].payment_status == PAYMENT_PAID

    order, usage = await _final_state(session_factory, reference)
    assert order.status == ORDER_CONFIRMED
    assert order.payment_status == PAYMENT_PAID
    assert usage == 1
    assert len(mailer.sent) == 1


async def test_late_provider_error_keeps_order_paid(db, session_factory,
                                                   mailer):
    adapter = WebhookDuringVerify(session_factory, mailer,
                                  provider_error=True)
    reference = await _discounted_checkout(db, adapter)

    result = await verify_payment(db, adapter, mailer, reference)
    assert result == {"success": False,
                      "error": "Payment verification failed"}

    order, usage = await _final_state(session_factory, reference)
    assert order.status == ORDER_CONFIRMED
    assert order.payment_status == PAYMENT_PAID
    assert usage == 1
    assert len(mailer.sent) == 1


async def test_email_failure_does_not_fail_verification(db, mockpay):
    from conftest import FakeMailer
    init = await initialize_payment(
        db, mockpay, USER, {"ticket_type": "Solo Vibes", "quantity": 1}
    )
    reference = init["data"]["reference"]
    mockpay.emit(reference, "succeeded")
    result = await verify_payment(db, mockpay, FakeMailer(fail=True),
                                  reference)
    assert result["success"]


async def test_unsuccessful_payment_marks_order_failed(db, session_factory,
                                                      mockpay, mailer):
    init = await initialize_payment(
        db, mockpay, USER, {"ticket_type": "Solo Vibes", "quantity": 1}
    )
    reference = init["data"]["reference"]
    mockpay.emit(reference, "failed")

    result = await verify_payment(db, mockpay, mailer, reference)
    assert result == {"success": False,
                      "error": "Payment was not successful"}
    assert mailer.sent == []

    async with session_factory() as fresh:
        order = (await get_order(fresh, reference))["order"]
        assert order.payment_status == PAYMENT_FAILED


async def test_verify_unknown_reference(db, mockpay, mailer):
    result = await verify_payment(db, mockpay, mailer, "ORD-2025-NOPE00")
    assert result == {"success": False, "error": "Order not found"}


async def test_failed_webhook_never_downgrades_paid_order(db, make_order):
    paid = await make_order()
    pending = await make_order(status=ORDER_PENDING,
                               payment_status=PAYMENT_PENDING)
    assert await mark_payment_failed(db, paid.order_id) == {
        "success": True, "changed": False,
    }
    assert (await mark_payment_failed(db, pending.order_id))["changed"]
    assert not (await mark_payment_failed(db, "ORD-2025-NOPE00"))["changed"]


async def test_failed_webhook_database_error(db, make_order, monkeypatch):
    order = await make_order(status=ORDER_PENDING,
                             payment_status=PAYMENT_PENDING)

    async def broken(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(db, "execute", broken)
    result = await mark_payment_failed(db, order.order_id)
    assert result == {"success": False,
                      "error": "Failed to update payment status"}


async def test_deactivate_ticket(db, make_order):
    order = await make_order()
    assert await deactivate_ticket(db, order.order_id) == {"success": True}
    fetched = (await get_order(db, order.order_id))["order"]
    assert fetched.is_active is False

    again = await deactivate_ticket(db, order.order_id)
    assert again == {"success": False,
                     "error": "Ticket is already deactivated"}


async def test_deactivate_ticket_guards(db, make_order):
    unpaid = await make_order(payment_status=PAYMENT_PENDING,
                              status=ORDER_PENDING)
    assert (await deactivate_ticket(db, unpaid.order_id))["error"] == \
        "Cannot deactivate unpaid tickets"
    assert (await deactivate_ticket(db, "ORD-2025-XXXXXX"))["error"] == \
        "Order not found"


async def test_verify_and_deactivate_requires_confirmed(db, make_order):
    paid_pending = await make_order(status=ORDER_PENDING)
    result = await verify_and_deactivate_ticket(db, paid_pending.order_id)
    assert result["error"] == "Order is not confirmed"

    order = await make_order()
    result = await verify_and_deactivate_ticket(db, order.order_id)
    assert result["success"]
    assert result["message"] == \
        "Ticket has been successfully verified and deactivated"

    used = await verify_and_deactivate_ticket(db, order.order_id)
    assert used["error"] == "Ticket has already been used"
    assert used["order"].order_id == order.order_id
