from __future__ import annotations
import logging
import secrets
import string
from datetime import datetime
from typing import Optional, Dict, Any

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import (
    APP_URL, EVENT_NAME, EVENT_DATE, EVENT_TIME, EVENT_LOCATION,
    PROCESSING_FEE_RATE, TICKET_CATALOG, ADMIN_NOTIFICATION_EMAIL,
)
from ..emails import (
    Mailer, render_order_confirmation, render_admin_order_notification,
    render_affiliate_sale_notification,
)
from ..helpers import ok, fail
from ..payments import PaymentAdapter, PaymentError
from ..schemas import CheckoutForm, OrderData, first_error
from .affiliates import find_active_affiliate, record_commissions
from .discounts import find_active_discount
from .orm import (
    Order, OrderItem, TicketType, User, Discount,
    ORDER_PENDING, ORDER_CONFIRMED, PAYMENT_PENDING, PAYMENT_PAID,
    PAYMENT_FAILED,
)

logger = logging.getLogger(__name__)

_ORDER_SUFFIX = string.ascii_uppercase + string.digits
ORDER_ID_ATTEMPTS = 5


def generate_order_id(today: Optional[datetime] = None) -> str:
    """ORD-YYYY-XXXXXX"""
    year = (today or datetime.now()).year
    suffix = "".join(secrets.choice(_ORDER_SUFFIX) for _ in range(6))
    return f"ORD-{year}-{suffix}"


def price_order(unit_price: float, quantity: int,
                discount_rate: Optional[float] = None) -> Dict[str, float]:
    subtotal = unit_price * quantity
    discount_amount = round(subtotal * discount_rate, 2) if discount_rate \
        else 0.0
    discounted = subtotal - discount_amount
    processing_fee = round(discounted * PROCESSING_FEE_RATE, 2)
    return {
        "subtotal": subtotal,
        "discount_amount": discount_amount,
        "processing_fee": processing_fee,
        "total": round(discounted + processing_fee, 2),
    }


async def _find_order(db: AsyncSession, order_id: str) -> Optional[Order]:
    return (await db.execute(
        select(Order).where(Order.order_id == order_id)
    )).scalar_one_or_none()


async def _upsert_user(db: AsyncSession, form: CheckoutForm) -> User:
    user = (await db.execute(
        select(User).where(User.email == form.email)
    )).scalar_one_or_none()
    if user is None:
        user = User(email=form.email, full_name=form.full_name,
                    phone_number=form.phone)
        db.add(user)
    else:
        user.full_name = form.full_name
        user.phone_number = form.phone
    await db.flush()
    return user


async def _ticket_type(db: AsyncSession, name: str) -> TicketType:
    ticket_type = (await db.execute(
        select(TicketType).where(TicketType.name == name)
    )).scalar_one_or_none()
    if ticket_type is None:
        ticket_type = TicketType(
            name=name,
            price=TICKET_CATALOG[name]["price"],
            description=f"{name} ticket for {EVENT_NAME}",
        )
        db.add(ticket_type)
        await db.flush()
    return ticket_type


async def _unused_order_id(db: AsyncSession) -> str:
    order_id = generate_order_id()
    for _ in range(ORDER_ID_ATTEMPTS):
        if await _find_order(db, order_id) is None:
            break
        order_id = generate_order_id()
    return order_id


# ----------------------------
# checkout
# ----------------------------
async def initialize_payment(db: AsyncSession, adapter: PaymentAdapter,
                             user_data: Dict[str, Any],
                             order_data: Dict[str, Any],
                             affiliate_ref: Optional[str] = None,
                             discount_code: Optional[str] = None):
    try:
        form = CheckoutForm(**user_data)
        wanted = OrderData(**order_data)
    except ValidationError as e:
        return fail(first_error(e))

    try:
        discount: Optional[Discount] = None
        if discount_code and discount_code.strip():
            discount = await find_active_discount(db, discount_code)
            if discount is None:
                return fail("Invalid or inactive discount code")

        user = await _upsert_user(db, form)
        ticket_type = await _ticket_type(db, wanted.ticket_type)
        affiliate = await find_active_affiliate(db, affiliate_ref)

        amounts = price_order(ticket_type.price, wanted.quantity,
                              discount.percentage if discount else None)
        order = Order(
            order_id=await _unused_order_id(db),
            user=user,
            subtotal=amounts["subtotal"],
            processing_fee=amounts["processing_fee"],
            total=amounts["total"],
            discount_id=discount.id if discount else None,
            discount_code=discount.code if discount else None,
            discount_type=discount.type if discount else None,
            discount_rate=discount.percentage if discount else None,
            discount_amount=amounts["discount_amount"],
            status=ORDER_PENDING,
            payment_status=PAYMENT_PENDING,
            event_name=EVENT_NAME,
            event_date=EVENT_DATE,
            event_time=EVENT_TIME,
            event_location=EVENT_LOCATION,
            affiliate=affiliate,
        )
        order.items.append(OrderItem(
            ticket_type=ticket_type,
            quantity=wanted.quantity,
            unit_price=ticket_type.price,
            total_price=amounts["subtotal"],
        ))
        db.add(order)
        await db.commit()
        logger.info("order %s created for %s (%s x%d)", order.order_id,
                    form.email, wanted.ticket_type, wanted.quantity)
    except Exception:
        logger.exception("[initialize_payment] Error")
        await db.rollback()
        return fail("Payment initialization failed")

    try:
        init = await adapter.initialize(
            reference=order.order_id,
            email=form.email,
            amount=order.total,
            metadata={
                "orderId": order.order_id,
                "userId": user.id,
                "ticketType": wanted.ticket_type,
                "quantity": wanted.quantity,
                "customerName": form.full_name,
                "customerPhone": form.phone,
                "affiliateRef": affiliate.ref_code if affiliate else None,
                "discountCode": order.discount_code,
            },
            callback_url=f"{APP_URL}/tickets/payment-success",
        )
    except PaymentError as e:
        logger.error("[initialize_payment] %s: %s", order.order_id, e)
        return fail(str(e))
    except Exception:
        logger.exception("[initialize_payment] provider error")
        return fail("Payment initialization failed")

    return ok(data={
        "order_id": order.order_id,
        "payment_url": init["payment_url"],
        "access_code": init["access_code"],
        "reference": init["reference"],
    })


async def _send_order_emails(mailer: Mailer, order: Order,
                             commission: float) -> None:
    if not mailer.configured:
        logger.warning("email not configured, skipping mails for %s",
                       order.order_id)
        return
    try:
        await mailer.send([order.user.email],
                          f"Your {EVENT_NAME} Tickets Are Here!",
                          render_order_confirmation(order))
    except Exception:
        logger.exception("[verify_payment] order confirmation email failed")

    if ADMIN_NOTIFICATION_EMAIL:
        try:
            await mailer.send([ADMIN_NOTIFICATION_EMAIL],
                              f"New order {order.order_id}",
                              render_admin_order_notification(order))
        except Exception:
            logger.exception("[verify_payment] admin notification failed")

    affiliate = order.affiliate
    if affiliate is not None:
        try:
            await mailer.send(
                [affiliate.user.email],
                "You just made a sale!",
                render_affiliate_sale_notification(
                    order,
                    full_name=affiliate.user.full_name,
                    ref_code=affiliate.ref_code,
                    commission_amount=commission,
                ),
            )
        except Exception:
            logger.exception("[verify_payment] affiliate notification failed")


async def _claim_paid(db: AsyncSession, reference: str) -> bool:
    # only one concurrent verification may flip the order to PAID
    row = (await db.execute(
        update(Order)
        .where(Order.order_id == reference,
               Order.payment_status != PAYMENT_PAID)
        .values(status=ORDER_CONFIRMED, payment_status=PAYMENT_PAID)
        .returning(Order.id)
        .execution_options(synchronize_session=False)
    )).first()
    return row is not None


async def verify_payment(db: AsyncSession, adapter: PaymentAdapter,
                         mailer: Mailer, reference: str):
    if not reference:
        return fail("Payment reference is required")
    order = await _find_order(db, reference)
    if order is None:
        return fail("Order not found")
    if order.is_paid_and_confirmed:
        return ok(order=order)

    try:
        if not await adapter.verify(reference):
            raise PaymentError("Payment was not successful")

        if not await _claim_paid(db, reference):
            # confirmed meanwhile by the webhook or the success page
            await db.commit()
            await db.refresh(order)
            return ok(order=order)

        if order.discount_id:
            await db.execute(
                update(Discount)
                .where(Discount.id == order.discount_id)
                .values(usage_count=Discount.usage_count + 1)
            )
        commission = await record_commissions(db, order)
        await db.commit()
        await db.refresh(order)
        logger.info("order %s confirmed", order.order_id)
    except Exception as e:
        if isinstance(e, PaymentError):
            logger.warning("[verify_payment] %s: %s", reference, e)
            error = str(e)
        else:
            logger.exception("[verify_payment] Error")
            error = "Payment verification failed"
        await db.rollback()
        try:
            await db.execute(
                update(Order)
                .where(Order.order_id == reference,
                       Order.payment_status != PAYMENT_PAID)
                .values(payment_status=PAYMENT_FAILED)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except Exception:
            logger.exception("[verify_payment] failed to update order status")
            await db.rollback()
        return fail(error)

    await _send_order_emails(mailer, order, commission)
    return ok(order=order)


async def mark_payment_failed(db: AsyncSession, reference: str):
    """Webhook path: a failed charge never downgrades a paid order."""
    try:
        row = (await db.execute(
            update(Order)
            .where(Order.order_id == reference,
                   Order.payment_status != PAYMENT_PAID)
            .values(payment_status=PAYMENT_FAILED)
            .returning(Order.id)
            .execution_options(synchronize_session=False)
        )).first()
        await db.commit()
        return ok(changed=row is not None)
    except Exception:
        logger.exception("[mark_payment_failed] Error")
        await db.rollback()
        return fail("Failed to update payment status")


# ----------------------------
# lookups
# ----------------------------
async def get_order(db: AsyncSession, order_id: str):
    try:
        return ok(order=await _find_order(db, order_id))
    except Exception:
        logger.exception("[get_order] Error")
        return fail("Failed to get order")


async def get_order_for_admin(db: AsyncSession, order_id: str):
    try:
        return ok(order=await _find_order(db, order_id))
    except Exception:
        logger.exception("[get_order_for_admin] Error")
        return fail("Failed to get order")


# ----------------------------
# gate check-in
# ----------------------------
async def deactivate_ticket(db: AsyncSession, order_id: str):
    try:
        order = await _find_order(db, order_id)
        if order is None:
            return fail("Order not found")
        if order.payment_status != PAYMENT_PAID:
            return fail("Cannot deactivate unpaid tickets")
        if not order.is_active:
            return fail("Ticket is already deactivated")

        order.is_active = False
        await db.commit()
        logger.info("ticket %s deactivated", order_id)
        return ok()
    except Exception:
        logger.exception("[deactivate_ticket] Error")
        await db.rollback()
        return fail("Failed to deactivate ticket")


async def verify_and_deactivate_ticket(db: AsyncSession, order_id: str):
    try:
        order = await _find_order(db, order_id)
        if order is None:
            return fail("Order not found")
        if order.payment_status != PAYMENT_PAID:
            return fail("Order payment is not confirmed")
        if order.status != ORDER_CONFIRMED:
            return fail("Order is not confirmed")
        if not order.is_active:
            return fail("Ticket has already been used", order=order)

        order.is_active = False
        order.qr_code_url = None
        await db.commit()
        return ok(
            order=order,
            message="Ticket has been successfully verified and deactivated",
        )
    except Exception:
        logger.exception("[verify_and_deactivate_ticket] Error")
        await db.rollback()
        return fail("Failed to verify ticket")
