from __future__ import annotations
import math
import re
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, Dict, Any


# ----------------------------
# Helpers
# ----------------------------
def now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def as_utc(ts: datetime | None) -> Optional[datetime]:
    # sqlite hands back naive datetimes
    if ts is not None and ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def to_iso(ts: datetime | None) -> Optional[str]:
    ts = as_utc(ts)
    return ts.isoformat() if ts is not None else None


def to_date(ts: datetime | None) -> str:
    if ts is None:
        return ""
    return ts.strftime("%Y-%m-%d")


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def format_naira(amount: float | int | None) -> str:
    amount = amount or 0
    if float(amount).is_integer():
        return f"₦{int(amount):,}"
    return f"₦{amount:,.2f}"


def clamp_page(page: Any) -> int:
    try:
        return max(1, int(page))
    except (TypeError, ValueError):
        return 1


def clamp_limit(limit: Any, default: int) -> int:
    try:
        return max(1, min(100, int(limit)))
    except (TypeError, ValueError):
        return default


@dataclass
class Pagination:
    current_page: int
    total_pages: int
    total_count: int
    limit: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(cls, page: int, limit: int, total_count: int) -> "Pagination":
        total_pages = math.ceil(total_count / limit) if limit else 0
        return cls(
            current_page=page,
            total_pages=total_pages,
            total_count=total_count,
            limit=limit,
            has_next=page < total_pages,
            has_previous=page > 1,
        )

    @property
    def offset(self) -> int:
        return (self.current_page - 1) * self.limit

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def fail(error: str, **extra) -> Dict[str, Any]:
    out: Dict[str, Any] = {"success": False, "error": error}
    out.update(extra)
    return out


def ok(**extra) -> Dict[str, Any]:
    out: Dict[str, Any] = {"success": True}
    out.update(extra)
    return out
