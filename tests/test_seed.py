from sqlalchemy import select

from shutupnrave.auth import check_password
from shutupnrave.model import Admin, TicketType
from shutupnrave.seed import seed_admin, seed_ticket_types


async def test_seed_admin_once(db):
    assert await seed_admin(db, " Boss@ShutUpNRave.com ", "letmein99")
    assert not await seed_admin(db, "boss@shutupnrave.com", "other")
    [admin] = (await db.execute(select(Admin))).scalars().all()
    assert admin.email == "boss@shutupnrave.com"
    assert check_password("letmein99", admin.password)


async def test_seed_ticket_types(db):
    assert await seed_ticket_types(db) == 2
    assert await seed_ticket_types(db) == 0
    prices = {t.name: t.price for t in
              (await db.execute(select(TicketType))).scalars().all()}
    assert prices == {"Solo Vibes": 3500, "Geng Energy": 15000}
