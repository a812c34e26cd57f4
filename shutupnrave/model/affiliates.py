from __future__ import annotations
import logging
import re
import secrets
import string
from typing import Optional, Dict, Any, List, Iterable
from urllib.parse import quote

from pydantic import ValidationError
from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import hash_password
from ..config import APP_URL
from ..emails import Mailer, render_affiliate_welcome
from ..helpers import ok, fail, Pagination, clamp_page, clamp_limit
from ..schemas import CreateAffiliateInput, first_error
from .orm import (
    Order, OrderItem, TicketType, User, Affiliate, AffiliateCommission,
    AffiliateCommissionRule, PAYMENT_PAID, ORDER_CONFIRMED,
    COMMISSION_PERCENTAGE, COMMISSION_FIXED_AMOUNT,
)

logger = logging.getLogger(__name__)

REF_CODE_ATTEMPTS = 5
RECENT_ORDERS = 20
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


# every affiliate total, commissions included, counts only these orders
def paid_and_confirmed():
    return and_(Order.payment_status == PAYMENT_PAID,
                Order.status == ORDER_CONFIRMED)


def referral_link(ref_code: str, app_url: str = APP_URL) -> str:
    return f"{app_url}/tickets?ref={quote(ref_code)}"


def generate_ref_code(full_name: Optional[str] = None) -> str:
    base = re.sub(r"[^a-zA-Z]", "", full_name or "")[:6].upper()
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"{base or 'AFF'}{suffix}"


# ----------------------------
# commission maths
# ----------------------------
def commission_for_item(rule: Optional[AffiliateCommissionRule],
                        item: OrderItem) -> float:
    if rule is None:
        return 0.0
    if rule.commission_type == COMMISSION_PERCENTAGE:
        return round(item.total_price * (rule.rate or 0.0), 2)
    if rule.commission_type == COMMISSION_FIXED_AMOUNT:
        return round((rule.amount or 0.0) * item.quantity, 2)
    return 0.0


async def record_commissions(db: AsyncSession, order: Order) -> float:
    """
    Adds one AffiliateCommission per order item of an attributed order.
    Items that already carry a commission are skipped. Does not commit.
    """
    if not order.affiliate_id or order.affiliate is None:
        return 0.0
    rules = {r.ticket_type_id: r for r in order.affiliate.commission_rules}
    item_ids = [item.id for item in order.items]
    existing = set((await db.execute(
        select(AffiliateCommission.order_item_id)
        .where(AffiliateCommission.order_item_id.in_(item_ids))
    )).scalars().all())

    total = 0.0
    for item in order.items:
        if item.id in existing:
            continue
        amount = commission_for_item(rules.get(item.ticket_type_id), item)
        if amount <= 0:
            continue
        db.add(AffiliateCommission(
            affiliate_id=order.affiliate_id,
            order_item_id=item.id,
            ticket_type_id=item.ticket_type_id,
            commission_amount=amount,
        ))
        total += amount
    return total


# ----------------------------
# aggregation
# ----------------------------
def summarize_orders(orders: Iterable[Order]) -> Dict[str, Any]:
    tickets_sold = 0
    subtotal_revenue = 0.0
    by_type: Dict[str, Dict[str, float]] = {}
    for order in orders:
        subtotal_revenue += order.subtotal
        for item in order.items:
            tickets_sold += item.quantity
            row = by_type.setdefault(
                item.ticket_type.name,
                {"tickets": 0, "revenue": 0.0, "commission": 0.0},
            )
            row["tickets"] += item.quantity
            row["revenue"] += item.total_price
    return {
        "tickets_sold": tickets_sold,
        "subtotal_revenue": subtotal_revenue,
        "by_ticket_type": by_type,
    }


async def successful_orders(db: AsyncSession,
                            affiliate_id: str) -> List[Order]:
    return list((await db.execute(
        select(Order)
        .where(Order.affiliate_id == affiliate_id, paid_and_confirmed())
        .order_by(Order.created_at.desc())
    )).scalars().all())


async def total_commission(db: AsyncSession, affiliate_id: str) -> float:
    total = (await db.execute(
        select(func.coalesce(
            func.sum(AffiliateCommission.commission_amount), 0))
        .join(OrderItem, AffiliateCommission.order_item_id == OrderItem.id)
        .join(Order, OrderItem.order_id == Order.id)
        .where(AffiliateCommission.affiliate_id == affiliate_id,
               paid_and_confirmed())
    )).scalar_one()
    return float(total or 0)


async def commission_by_ticket_type(db: AsyncSession,
                                    affiliate_id: str) -> Dict[str, float]:
    rows = (await db.execute(
        select(TicketType.name,
               func.sum(AffiliateCommission.commission_amount))
        .join(TicketType, AffiliateCommission.ticket_type_id == TicketType.id)
        .join(OrderItem, AffiliateCommission.order_item_id == OrderItem.id)
        .join(Order, OrderItem.order_id == Order.id)
        .where(AffiliateCommission.affiliate_id == affiliate_id,
               paid_and_confirmed())
        .group_by(TicketType.name)
    )).all()
    return {name: float(amount or 0) for name, amount in rows}


async def affiliate_stats(db: AsyncSession,
                          affiliate_id: str) -> Dict[str, Any]:
    orders = await successful_orders(db, affiliate_id)
    summary = summarize_orders(orders)
    by_type = summary["by_ticket_type"]
    for name, amount in (
            await commission_by_ticket_type(db, affiliate_id)).items():
        by_type.setdefault(
            name, {"tickets": 0, "revenue": 0.0, "commission": 0.0}
        )["commission"] = amount
    return {
        "successful_orders": len(orders),
        "tickets_sold": summary["tickets_sold"],
        "subtotal_revenue": summary["subtotal_revenue"],
        "total_commission": await total_commission(db, affiliate_id),
        "by_ticket_type": by_type,
        "recent_orders": [
            {
                "id": o.id,
                "order_id": o.order_id,
                "created_at": o.created_at,
                "subtotal": o.subtotal,
                "total": o.total,
            }
            for o in orders[:RECENT_ORDERS]
        ],
    }


def _user_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "full_name": user.full_name,
        "email": user.email,
        "phone_number": user.phone_number,
    }


async def get_affiliates(db: AsyncSession, search_query: str = "",
                         page: int = 1, limit: int = 20):
    try:
        page = clamp_page(page)
        limit = clamp_limit(limit, 20)

        conditions = []
        q = (search_query or "").strip()
        if q:
            like = f"%{q.lower()}%"
            conditions.append(or_(
                func.lower(Affiliate.ref_code).like(like),
                func.lower(User.full_name).like(like),
                func.lower(User.email).like(like),
                User.phone_number.like(f"%{q}%"),
            ))

        base = select(Affiliate).join(User, Affiliate.user_id == User.id)
        if conditions:
            base = base.where(*conditions)

        total_count = (await db.execute(
            select(func.count()).select_from(base.subquery())
        )).scalar_one()
        pagination = Pagination.build(page, limit, total_count)
        affiliates = (await db.execute(
            base.order_by(Affiliate.created_at.desc())
            .offset(pagination.offset).limit(limit)
        )).scalars().all()

        items = []
        for a in affiliates:
            stats = await affiliate_stats(db, a.id)
            items.append({
                "id": a.id,
                "ref_code": a.ref_code,
                "status": a.status,
                "created_at": a.created_at,
                "user": _user_dict(a.user),
                "stats": {
                    "successful_orders": stats["successful_orders"],
                    "tickets_sold": stats["tickets_sold"],
                    "subtotal_revenue": stats["subtotal_revenue"],
                    "total_commission": stats["total_commission"],
                    "by_ticket_type": {
                        name: row["tickets"]
                        for name, row in stats["by_ticket_type"].items()
                    },
                },
            })
        return ok(affiliates=items, pagination=pagination.as_dict())
    except Exception:
        logger.exception("[get_affiliates] Error")
        return fail("Failed to fetch affiliates")


async def get_affiliate_details(db: AsyncSession, affiliate_id: str):
    try:
        if not affiliate_id:
            return fail("Affiliate ID is required")
        affiliate = await db.get(Affiliate, affiliate_id)
        if affiliate is None:
            return fail("Affiliate not found")

        stats = await affiliate_stats(db, affiliate_id)
        recent_orders = stats.pop("recent_orders")
        return ok(
            affiliate={
                "id": affiliate.id,
                "ref_code": affiliate.ref_code,
                "status": affiliate.status,
                "created_at": affiliate.created_at,
                "link": referral_link(affiliate.ref_code),
                "user": _user_dict(affiliate.user),
                "commission_rules": [
                    {
                        "ticket_type_name": r.ticket_type.name,
                        "type": r.commission_type,
                        "rate": r.rate,
                        "amount": r.amount,
                    }
                    for r in affiliate.commission_rules
                ],
            },
            stats=stats,
            recent_orders=recent_orders,
        )
    except Exception:
        logger.exception("[get_affiliate_details] Error")
        return fail("Failed to fetch affiliate details")


async def find_active_affiliate(db: AsyncSession,
                                ref_code: Optional[str]
                                ) -> Optional[Affiliate]:
    ref_code = (ref_code or "").strip().upper()
    if not ref_code:
        return None
    return (await db.execute(
        select(Affiliate).where(func.upper(Affiliate.ref_code) == ref_code,
                                Affiliate.status == "ACTIVE")
    )).scalar_one_or_none()


# ----------------------------
# admin mutations
# ----------------------------
async def _unique_ref_code(db: AsyncSession, full_name: str) -> str:
    ref_code = generate_ref_code(full_name)
    # a few attempts to avoid rare collisions
    for _ in range(REF_CODE_ATTEMPTS):
        taken = (await db.execute(
            select(func.count()).select_from(Affiliate)
            .where(Affiliate.ref_code == ref_code)
        )).scalar_one()
        if not taken:
            break
        ref_code = generate_ref_code(full_name)
    return ref_code


async def create_affiliate_and_send_email(db: AsyncSession, mailer: Mailer,
                                          data: Dict[str, Any]):
    try:
        parsed = CreateAffiliateInput(**data)
    except ValidationError as e:
        return fail(first_error(e))

    if not mailer.configured:
        return fail("Email service is not configured")

    try:
        user = (await db.execute(
            select(User).where(User.email == parsed.email)
        )).scalar_one_or_none()
        if user is None:
            user = User(
                email=parsed.email,
                full_name=parsed.full_name or parsed.email.split("@")[0],
                phone_number=parsed.phone_number or "",
            )
            db.add(user)
            await db.flush()
        else:
            if parsed.full_name:
                user.full_name = parsed.full_name
            if parsed.phone_number:
                user.phone_number = parsed.phone_number

        affiliate = (await db.execute(
            select(Affiliate).where(Affiliate.user_id == user.id)
        )).scalar_one_or_none()
        if affiliate is None:
            affiliate = Affiliate(
                user=user,
                ref_code=await _unique_ref_code(db, user.full_name),
                status="ACTIVE",
                password_hash=(hash_password(parsed.password)
                               if parsed.password else None),
                commission_rules=[],
            )
            db.add(affiliate)
        elif parsed.password:
            affiliate.password_hash = hash_password(parsed.password)
        await db.commit()

        ref_code = affiliate.ref_code
        link = referral_link(ref_code)
        html = render_affiliate_welcome(
            full_name=user.full_name,
            ref_code=ref_code,
            link=link,
            email=user.email,
            temporary_password=parsed.password,
        )
        await mailer.send([user.email], "Your ShutUpNRave Affiliate Link",
                          html)
        return ok(affiliate_id=affiliate.id, ref_code=ref_code, link=link)
    except Exception:
        logger.exception("[create_affiliate_and_send_email] Error")
        await db.rollback()
        return fail("Failed to create affiliate or send email")


async def set_commission_rule(db: AsyncSession, affiliate_id: str,
                              ticket_type_name: str, commission_type: str,
                              value: float):
    try:
        if commission_type not in (COMMISSION_PERCENTAGE,
                                   COMMISSION_FIXED_AMOUNT):
            return fail("Invalid commission type")
        value = float(value)
        if value <= 0 or (commission_type == COMMISSION_PERCENTAGE
                          and value > 1):
            return fail("Invalid commission value")

        affiliate = await db.get(Affiliate, affiliate_id)
        if affiliate is None:
            return fail("Affiliate not found")
        ticket_type = (await db.execute(
            select(TicketType).where(TicketType.name == ticket_type_name)
        )).scalar_one_or_none()
        if ticket_type is None:
            return fail("Ticket type not found")

        rule = next((r for r in affiliate.commission_rules
                     if r.ticket_type_id == ticket_type.id), None)
        if rule is None:
            rule = AffiliateCommissionRule(ticket_type=ticket_type,
                                           ticket_type_id=ticket_type.id)
            affiliate.commission_rules.append(rule)
        rule.commission_type = commission_type
        rule.rate = value if commission_type == COMMISSION_PERCENTAGE else None
        rule.amount = (value if commission_type == COMMISSION_FIXED_AMOUNT
                       else None)
        await db.commit()
        return ok()
    except Exception:
        logger.exception("[set_commission_rule] Error")
        await db.rollback()
        return fail("Failed to save commission rule")
