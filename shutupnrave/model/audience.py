from __future__ import annotations
import csv
import io
import logging
from typing import Optional, Dict, Any, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import (
    ok, fail, now, as_utc, to_date, is_valid_email, Pagination, clamp_page,
    clamp_limit,
)
from .orm import NewsletterSubscriber, User

logger = logging.getLogger(__name__)

SOURCE_NEWSLETTER = "newsletter"
SOURCE_CUSTOMER = "customer"

CSV_HEADERS = [
    "Email",
    "Source",
    "Full Name",
    "Phone Number",
    "Status",
    "Total Orders",
    "Last Order Date",
    "Created Date",
]


async def subscribe_to_newsletter(db: AsyncSession,
                                  email: Optional[str]) -> Dict[str, Any]:
    email = (email or "").strip().lower()
    if not is_valid_email(email):
        return {"success": False,
                "message": "Please enter a valid email address."}
    try:
        existing = (await db.execute(
            select(NewsletterSubscriber)
            .where(NewsletterSubscriber.email == email)
        )).scalar_one_or_none()
        if existing is not None:
            if not existing.active:
                existing.active = True
                await db.commit()
                return {
                    "success": True,
                    "message": "Welcome back! You've been resubscribed "
                               "to our newsletter.",
                }
            return {
                "success": False,
                "message": "This email is already subscribed to our "
                           "newsletter.",
            }

        db.add(NewsletterSubscriber(email=email))
        await db.commit()
        return {
            "success": True,
            "message": "Thanks for subscribing! Check your inbox for updates.",
        }
    except Exception:
        logger.exception("[subscribe_to_newsletter] Error")
        await db.rollback()
        return {"success": False,
                "message": "Something went wrong. Please try again later."}


# ----------------------------
# email list
# ----------------------------
async def get_newsletter_subscribers(db: AsyncSession):
    try:
        rows = (await db.execute(
            select(NewsletterSubscriber)
            .order_by(NewsletterSubscriber.created_at.desc())
        )).scalars().all()
        return ok(subscribers=[
            {
                "id": s.id,
                "email": s.email,
                "source": SOURCE_NEWSLETTER,
                "active": s.active,
                "full_name": None,
                "phone_number": None,
                "total_orders": 0,
                "last_order_date": None,
                "created_at": as_utc(s.created_at),
            }
            for s in rows
        ])
    except Exception:
        logger.exception("[get_newsletter_subscribers] Database error")
        return fail("Failed to fetch newsletter subscribers", subscribers=[])


async def get_customer_emails(db: AsyncSession):
    try:
        rows = (await db.execute(
            select(User).order_by(User.created_at.desc())
        )).scalars().all()
        customers = []
        for user in rows:
            order_dates = [as_utc(o.created_at) for o in user.orders]
            customers.append({
                "id": user.id,
                "email": user.email,
                "source": SOURCE_CUSTOMER,
                # customers are always reachable
                "active": True,
                "full_name": user.full_name,
                "phone_number": user.phone_number,
                "total_orders": len(user.orders),
                "last_order_date": max(order_dates) if order_dates else None,
                "created_at": as_utc(user.created_at),
            })
        return ok(customers=customers)
    except Exception:
        logger.exception("[get_customer_emails] Database error")
        return fail("Failed to fetch customer emails", customers=[])


def _matches(entry: Dict[str, Any], query: str) -> bool:
    return (query in entry["email"].lower()
            or query in (entry["full_name"] or "").lower()
            or query in (entry["phone_number"] or ""))


def merge_emails(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One row per address; customer rows win over subscriber rows."""
    merged: Dict[str, Dict[str, Any]] = {}
    for entry in entries:
        existing = merged.get(entry["email"])
        if existing is None:
            merged[entry["email"]] = dict(entry, is_both=False)
        elif existing["source"] != entry["source"]:
            customer = entry if entry["source"] == SOURCE_CUSTOMER \
                else existing
            merged[entry["email"]] = dict(customer, is_both=True)
    out = list(merged.values())
    out.sort(key=lambda e: e["created_at"], reverse=True)
    return out


async def collect_emails(db: AsyncSession, search_query: str = "",
                         source_filter: str = "all",
                         active_filter: str = "all"):
    """Returns (filtered rows, merged rows)."""
    subscribers = await get_newsletter_subscribers(db)
    customers = await get_customer_emails(db)
    if not subscribers["success"] or not customers["success"]:
        raise RuntimeError(
            "Failed to fetch email data from one or more sources"
        )

    entries = subscribers["subscribers"] + customers["customers"]
    if source_filter and source_filter != "all":
        entries = [e for e in entries if e["source"] == source_filter]
    if active_filter and active_filter != "all":
        wanted = active_filter == "active"
        entries = [e for e in entries if e["active"] == wanted]
    q = (search_query or "").strip().lower()
    if q:
        entries = [e for e in entries if _matches(e, q)]
    return entries, merge_emails(entries)


async def get_all_emails(db: AsyncSession, search_query: str = "",
                         source_filter: str = "all",
                         active_filter: str = "all",
                         page: int = 1, limit: int = 50):
    empty_stats = {
        "total_emails": 0,
        "newsletter_subscribers": 0,
        "customers": 0,
        "active_emails": 0,
        "inactive_emails": 0,
    }
    try:
        page = clamp_page(page)
        limit = clamp_limit(limit, 50)
        entries, unique = await collect_emails(db, search_query,
                                               source_filter, active_filter)
        pagination = Pagination.build(page, limit, len(unique))
        stats = {
            "total_emails": len(unique),
            "newsletter_subscribers": sum(
                1 for e in entries if e["source"] == SOURCE_NEWSLETTER),
            "customers": sum(
                1 for e in entries if e["source"] == SOURCE_CUSTOMER),
            "active_emails": sum(1 for e in unique if e["active"]),
            "inactive_emails": sum(1 for e in unique if not e["active"]),
        }
        return ok(
            emails=unique[pagination.offset:pagination.offset + limit],
            all_emails=unique,
            pagination=pagination.as_dict(),
            stats=stats,
        )
    except Exception:
        logger.exception("[get_all_emails] Email processing error")
        return fail("Failed to fetch and process emails. Please try again.",
                    emails=[], stats=empty_stats)


def emails_to_csv(entries: List[Dict[str, Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for e in entries:
        writer.writerow([
            e["email"],
            "Newsletter Subscriber" if e["source"] == SOURCE_NEWSLETTER
            else "Ticket Customer",
            e["full_name"] or "",
            e["phone_number"] or "",
            "Active" if e["active"] else "Inactive",
            str(e["total_orders"] or 0),
            to_date(e["last_order_date"]),
            to_date(e["created_at"]),
        ])
    return buf.getvalue().rstrip("\n")


def export_filename(source_filter: Optional[str] = None) -> str:
    suffix = f"_{source_filter}" if source_filter and \
        source_filter != "all" else ""
    return f"shutupnrave_emails{suffix}_{to_date(now())}.csv"


async def export_emails(db: AsyncSession, search_query: str = "",
                        source_filter: str = "all",
                        active_filter: str = "all"):
    try:
        _, unique = await collect_emails(db, search_query, source_filter,
                                         active_filter)
        return ok(csv_content=emails_to_csv(unique),
                  filename=export_filename(source_filter))
    except Exception:
        logger.exception("[export_emails] Export error")
        return fail("Failed to export emails. Please try again.")
