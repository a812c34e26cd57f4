"""
Seeds the admin account and the ticket types.

    ADMIN_EMAIL=... ADMIN_PASSWORD=... python -m shutupnrave.seed
"""
import asyncio
import logging
import os
import sys

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import hash_password
from .config import (
    DATABASE_URL, EVENT_NAME, TICKET_CATALOG, configure_logging,
)
from .infra.sql import make_async_engine
from .model import Base, Admin, TicketType

logger = logging.getLogger(__name__)


async def seed_admin(db: AsyncSession, email: str, password: str) -> bool:
    email = email.strip().lower()
    existing = (await db.execute(
        select(Admin).where(Admin.email == email)
    )).scalar_one_or_none()
    if existing is not None:
        logger.info("admin %s already exists", email)
        return False
    db.add(Admin(email=email, password=hash_password(password)))
    await db.commit()
    logger.info("admin %s created", email)
    return True


async def seed_ticket_types(db: AsyncSession) -> int:
    created = 0
    for name, t in TICKET_CATALOG.items():
        existing = (await db.execute(
            select(TicketType).where(TicketType.name == name)
        )).scalar_one_or_none()
        if existing is not None:
            continue
        db.add(TicketType(
            name=name,
            price=t["price"],
            description=f"{t['description']} for {EVENT_NAME}",
            is_active=True,
        ))
        created += 1
    await db.commit()
    logger.info("%d ticket type(s) created", created)
    return created


async def main() -> int:
    configure_logging()
    email = os.environ.get("ADMIN_EMAIL")
    password = os.environ.get("ADMIN_PASSWORD")
    if not email or not password:
        logger.error("ADMIN_EMAIL and ADMIN_PASSWORD must be set")
        return 1

    engine, SessionAsync = make_async_engine(DATABASE_URL)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with SessionAsync() as db:
            await seed_admin(db, email, password)
            await seed_ticket_types(db)
    finally:
        await engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
