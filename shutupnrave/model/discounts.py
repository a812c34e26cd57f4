from __future__ import annotations
import logging
import secrets
import string
from typing import Optional, Dict, Any

from pydantic import ValidationError
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import ok, fail
from ..schemas import DiscountInput, DiscountUpdate
from .orm import Discount

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def random_code(n: int = 8) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(n))


def discount_dict(d: Discount) -> Dict[str, Any]:
    return {
        "id": d.id,
        "code": d.code,
        "percentage": d.percentage,
        "is_active": d.is_active,
        "usage_count": d.usage_count,
        "created_at": d.created_at,
    }


async def find_active_discount(
    db: AsyncSession, code: Optional[str]
) -> Optional[Discount]:
    code = (code or "").strip().upper()
    if not code:
        return None
    return (await db.execute(
        select(Discount).where(Discount.code == code,
                               Discount.is_active.is_(True))
    )).scalar_one_or_none()


async def create_discount(db: AsyncSession, data: Dict[str, Any]):
    try:
        parsed = DiscountInput(**data)
    except ValidationError:
        return fail("Invalid discount input")
    try:
        code = (parsed.code or random_code()).upper()
        taken = (await db.execute(
            select(func.count()).select_from(Discount)
            .where(Discount.code == code)
        )).scalar_one()
        if taken:
            return fail("Discount code already exists")
        discount = Discount(code=code, type="PERCENTAGE",
                            percentage=parsed.percentage,
                            is_active=parsed.is_active)
        db.add(discount)
        await db.commit()
        return ok(id=discount.id, code=discount.code)
    except Exception:
        logger.exception("[create_discount] Error")
        await db.rollback()
        return fail("Failed to create discount")


async def list_discounts(db: AsyncSession):
    try:
        rows = (await db.execute(
            select(Discount).order_by(Discount.created_at.desc())
        )).scalars().all()
        return ok(discounts=[discount_dict(d) for d in rows])
    except Exception:
        logger.exception("[list_discounts] Error")
        return fail("Failed to fetch discounts")


async def set_discount_active(db: AsyncSession, discount_id: str,
                              is_active: bool):
    try:
        discount = await db.get(Discount, discount_id)
        if discount is None:
            return fail("Failed to update discount")
        discount.is_active = bool(is_active)
        await db.commit()
        return ok()
    except Exception:
        logger.exception("[set_discount_active] Error")
        await db.rollback()
        return fail("Failed to update discount")


async def update_discount(db: AsyncSession, discount_id: str,
                          data: Dict[str, Any]):
    try:
        parsed = DiscountUpdate(**data)
    except ValidationError:
        return fail("Invalid discount input")
    try:
        code = parsed.code.upper()
        existing = (await db.execute(
            select(Discount).where(Discount.code == code)
        )).scalar_one_or_none()
        if existing is not None and existing.id != discount_id:
            return fail("Discount code already exists")

        discount = await db.get(Discount, discount_id)
        if discount is None:
            return fail("Failed to update discount")
        discount.code = code
        discount.percentage = parsed.percentage
        discount.is_active = parsed.is_active
        await db.commit()
        return ok()
    except Exception:
        logger.exception("[update_discount] Error")
        await db.rollback()
        return fail("Failed to update discount")


async def delete_discount(db: AsyncSession, discount_id: str):
    try:
        discount = await db.get(Discount, discount_id)
        if discount is None:
            return fail("Failed to delete discount")
        await db.delete(discount)
        await db.commit()
        return ok()
    except Exception:
        logger.exception("[delete_discount] Error")
        await db.rollback()
        return fail("Failed to delete discount")
