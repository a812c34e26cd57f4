import os

# must be set before the app module builds its engine
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("JWT_SECRET", "test-secret")

from typing import AsyncGenerator, Optional, List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from shutupnrave.auth import hash_password
from shutupnrave.config import TICKET_CATALOG
from shutupnrave.infra.sql import make_async_engine
from shutupnrave.model import (
    Base, Admin, User, TicketType, Order, OrderItem, Affiliate,
    AffiliateCommissionRule,
)
from shutupnrave.model.orm import (
    ORDER_CONFIRMED, PAYMENT_PAID, COMMISSION_PERCENTAGE,
)
from shutupnrave.payments import MockPay

ADMIN_EMAIL = "admin@shutupnrave.com"
ADMIN_PASSWORD = "correct horse"


class FakeMailer:
    """Records outgoing mail instead of calling Resend."""

    def __init__(self, configured: bool = True, fail: bool = False):
        self.configured = configured
        self.fail = fail
        self.sent: List[dict] = []

    async def send(self, to, subject, html):
        if self.fail:
            raise RuntimeError("provider down")
        self.sent.append({"to": to, "subject": subject, "html": html})
        return {"id": f"email_{len(self.sent)}"}


@pytest_asyncio.fixture
async def session_factory():
    engine, SessionAsync = make_async_engine("sqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield SessionAsync
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def mockpay() -> MockPay:
    return MockPay(secret="test-mock-secret")


@pytest_asyncio.fixture
async def admin(db) -> Admin:
    a = Admin(email=ADMIN_EMAIL, password=hash_password(ADMIN_PASSWORD))
    db.add(a)
    await db.commit()
    return a


async def _ticket_type(db: AsyncSession, name: str) -> TicketType:
    from sqlalchemy import select
    tt = (await db.execute(
        select(TicketType).where(TicketType.name == name)
    )).scalar_one_or_none()
    if tt is None:
        tt = TicketType(name=name, price=TICKET_CATALOG[name]["price"])
        db.add(tt)
        await db.flush()
    return tt


async def _user(db: AsyncSession, email: str, full_name: str,
                phone: str) -> User:
    from sqlalchemy import select
    user = (await db.execute(
        select(User).where(User.email == email)
    )).scalar_one_or_none()
    if user is None:
        user = User(email=email, full_name=full_name, phone_number=phone)
        db.add(user)
        await db.flush()
    return user


@pytest.fixture
def make_order(db):
    counter = {"n": 0}

    async def _make(*, email: str = "ada@example.com",
                    full_name: str = "Ada Lovelace",
                    phone: str = "08012345678",
                    ticket_type: str = "Solo Vibes",
                    quantity: int = 1,
                    status: str = ORDER_CONFIRMED,
                    payment_status: str = PAYMENT_PAID,
                    is_active: bool = True,
                    affiliate: Optional[Affiliate] = None,
                    order_id: Optional[str] = None) -> Order:
        counter["n"] += 1
        tt = await _ticket_type(db, ticket_type)
        user = await _user(db, email, full_name, phone)
        subtotal = tt.price * quantity
        order = Order(
            order_id=order_id or f"ORD-2025-T{counter['n']:05d}",
            user=user,
            subtotal=subtotal,
            processing_fee=round(subtotal * 0.05, 2),
            total=round(subtotal * 1.05, 2),
            status=status,
            payment_status=payment_status,
            is_active=is_active,
            affiliate=affiliate,
        )
        order.items.append(OrderItem(
            ticket_type=tt, quantity=quantity, unit_price=tt.price,
            total_price=subtotal,
        ))
        db.add(order)
        await db.commit()
        return order

    return _make


@pytest.fixture
def make_affiliate(db):
    async def _make(*, email: str = "promoter@example.com",
                    full_name: str = "Promo Ter",
                    ref_code: str = "PROMOX1Y2Z3",
                    password: Optional[str] = "affpass123",
                    rate: Optional[float] = 0.1,
                    status: str = "ACTIVE") -> Affiliate:
        user = await _user(db, email, full_name, "08099999999")
        rules = []
        if rate is not None:
            for name in TICKET_CATALOG:
                tt = await _ticket_type(db, name)
                rules.append(AffiliateCommissionRule(
                    ticket_type=tt, ticket_type_id=tt.id,
                    commission_type=COMMISSION_PERCENTAGE, rate=rate,
                ))
        affiliate = Affiliate(
            user=user,
            ref_code=ref_code,
            status=status,
            password_hash=hash_password(password) if password else None,
            commission_rules=rules,
        )
        db.add(affiliate)
        await db.commit()
        return affiliate

    return _make


@pytest_asyncio.fixture
async def client(session_factory, mockpay, mailer):
    from shutupnrave.server import app, get_db

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.state.payments = mockpay
    app.state.mailer = mailer
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport,
                           base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
    app.state.payments = None
    app.state.mailer = None
