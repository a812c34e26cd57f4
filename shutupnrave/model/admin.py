from __future__ import annotations
import logging
from typing import Optional, Dict, Any, List, Iterable

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import ok, fail, Pagination, clamp_page, clamp_limit
from .orders import deactivate_ticket
from .orm import (
    Order, User, ORDER_PENDING, ORDER_CANCELLED, ORDER_REFUNDED,
    PAYMENT_PENDING, PAYMENT_FAILED,
)

logger = logging.getLogger(__name__)

ACTIVE_FILTERS = ("all", "active", "used")


async def deactivate_ticket_action(db: AsyncSession, order_id: Optional[str]):
    try:
        if not order_id or not isinstance(order_id, str):
            return fail("Invalid order ID provided")
        result = await deactivate_ticket(db, order_id)
        if not result["success"]:
            return fail(result.get("error") or "Failed to deactivate ticket")
        return ok()
    except Exception:
        logger.exception("[deactivate_ticket_action] Unexpected error")
        return fail(
            "An unexpected error occurred while deactivating the ticket"
        )


def ticket_stats(orders: Iterable[Order]) -> Dict[str, Dict[str, float]]:
    stats: Dict[str, Dict[str, float]] = {}
    for order in orders:
        for item in order.items:
            row = stats.setdefault(item.ticket_type.name,
                                   {"count": 0, "revenue": 0.0})
            row["count"] += item.quantity
            row["revenue"] += item.total_price
    return stats


async def get_orders_with_filters(db: AsyncSession,
                                  search_query: str = "",
                                  status_filter: str = "all",
                                  active_filter: str = "all",
                                  page: int = 1, limit: int = 15):
    try:
        page = clamp_page(page)
        limit = clamp_limit(limit, 15)

        conditions = []
        q = (search_query or "").strip()
        if q:
            like = f"%{q.lower()}%"
            conditions.append(or_(
                func.lower(Order.order_id).like(like),
                func.lower(User.full_name).like(like),
                func.lower(User.email).like(like),
                User.phone_number.like(f"%{q}%"),
            ))
        if status_filter and status_filter != "all":
            conditions.append(Order.status == status_filter.upper())
        if active_filter and active_filter != "all":
            conditions.append(Order.is_active.is_(active_filter == "active"))

        base = (select(Order).join(User, Order.user_id == User.id)
                .where(*conditions).order_by(Order.created_at.desc()))

        all_orders = list((await db.execute(base)).scalars().all())
        pagination = Pagination.build(page, limit, len(all_orders))
        orders = all_orders[pagination.offset:pagination.offset + limit]

        return ok(
            orders=orders,
            all_orders=all_orders,
            pagination=pagination.as_dict(),
            ticket_stats=ticket_stats(all_orders),
        )
    except Exception:
        logger.exception("[get_orders_with_filters] Database query error")
        return fail("Failed to fetch orders. Please try again.", orders=[])


def dashboard_statistics(orders: List[Order]) -> Dict[str, Any]:
    stats: Dict[str, Any] = {
        "total_orders": len(orders),
        "active_tickets": sum(1 for o in orders if o.is_active),
        "used_tickets": sum(1 for o in orders if not o.is_active),
        "by_ticket_type": ticket_stats(orders),
        "total_tickets_sold": 0,
        "total_processing_fees": 0.0,
        "total_subtotal": 0.0,
    }
    for order in orders:
        stats["total_processing_fees"] += order.processing_fee
        stats["total_subtotal"] += order.subtotal
        stats["total_tickets_sold"] += order.ticket_count
    return stats


# ----------------------------
# pending tickets
# ----------------------------
def pending_tickets(orders: Iterable[Order]) -> List[Order]:
    """Everything that is not both paid and confirmed."""
    return [o for o in orders if not o.is_paid_and_confirmed]


def pending_ticket_stats(orders: Iterable[Order]) -> Dict[str, int]:
    pending = pending_tickets(orders)
    return {
        "total_pending": len(pending),
        "pending_orders": sum(
            1 for o in pending
            if o.payment_status == PAYMENT_PENDING
            and o.status == ORDER_PENDING
        ),
        "failed_payments": sum(
            1 for o in pending if o.payment_status == PAYMENT_FAILED
        ),
        "cancelled_orders": sum(
            1 for o in pending if o.status == ORDER_CANCELLED
        ),
        "refunded_orders": sum(
            1 for o in pending if o.status == ORDER_REFUNDED
        ),
    }


def pending_status_text(order: Order) -> str:
    if order.payment_status == PAYMENT_FAILED:
        return "Payment Failed"
    if order.payment_status == PAYMENT_PENDING and \
            order.status == ORDER_PENDING:
        return "Payment Pending"
    if order.status == ORDER_CANCELLED:
        return "Cancelled"
    if order.status == ORDER_REFUNDED:
        return "Refunded"
    return f"{order.status} / {order.payment_status}"
