from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    DateTime,
    ForeignKey,
)

from ..helpers import now, new_id


Base = declarative_base()

# Order.status: PENDING | CONFIRMED | CANCELLED | REFUNDED
# Order.payment_status: PENDING | PAID | FAILED
ORDER_PENDING = "PENDING"
ORDER_CONFIRMED = "CONFIRMED"
ORDER_CANCELLED = "CANCELLED"
ORDER_REFUNDED = "REFUNDED"
ORDER_STATUSES = (ORDER_PENDING, ORDER_CONFIRMED, ORDER_CANCELLED,
                  ORDER_REFUNDED)

PAYMENT_PENDING = "PENDING"
PAYMENT_PAID = "PAID"
PAYMENT_FAILED = "FAILED"

COMMISSION_PERCENTAGE = "PERCENTAGE"
COMMISSION_FIXED_AMOUNT = "FIXED_AMOUNT"


def _id_column():
    return Column(String, primary_key=True, default=new_id)


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = _id_column()
    full_name = Column(String, nullable=False)
    phone_number = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now,
                        onupdate=now)

    orders = relationship("Order", back_populates="user",
                          lazy="selectin")


class TicketType(Base):
    __tablename__ = "ticket_types"
    id = _id_column()
    name = Column(String, nullable=False, unique=True)
    price = Column(Integer, nullable=False)  # NGN
    description = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now,
                        onupdate=now)


class Order(Base):
    __tablename__ = "orders"
    id = _id_column()
    # human readable: ORD-YYYY-XXXXXX, also the payment reference
    order_id = Column(String, nullable=False, unique=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)

    subtotal = Column(Float, nullable=False)
    processing_fee = Column(Float, nullable=False, default=0)
    total = Column(Float, nullable=False)

    # discount snapshot at checkout time
    discount_id = Column(String, nullable=True)
    discount_code = Column(String, nullable=True)
    discount_type = Column(String, nullable=True)
    discount_rate = Column(Float, nullable=True)
    discount_amount = Column(Float, nullable=False, default=0)

    status = Column(String, nullable=False, default=ORDER_PENDING)
    payment_status = Column(String, nullable=False, default=PAYMENT_PENDING)
    # False once the ticket has been scanned/used at the gate
    is_active = Column(Boolean, nullable=False, default=True)

    event_name = Column(String, nullable=False, default="")
    event_date = Column(String, nullable=False, default="")
    event_time = Column(String, nullable=False, default="")
    event_location = Column(String, nullable=False, default="")
    qr_code_url = Column(String, nullable=True)

    affiliate_id = Column(String, ForeignKey("affiliates.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now,
                        onupdate=now)

    user = relationship("User", back_populates="orders", lazy="selectin")
    items = relationship("OrderItem", back_populates="order",
                         lazy="selectin", cascade="all, delete-orphan")
    affiliate = relationship("Affiliate", lazy="selectin")

    @property
    def is_paid_and_confirmed(self) -> bool:
        return (self.payment_status == PAYMENT_PAID
                and self.status == ORDER_CONFIRMED)

    @property
    def ticket_count(self) -> int:
        return sum(item.quantity for item in self.items)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = _id_column()
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False)
    total_price = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now,
                        onupdate=now)

    order = relationship("Order", back_populates="items")
    ticket_type = relationship("TicketType", lazy="selectin")


class Admin(Base):
    __tablename__ = "admins"
    id = _id_column()
    email = Column(String, nullable=False, unique=True)
    password = Column(String, nullable=False)  # bcrypt hash
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now,
                        onupdate=now)


class Affiliate(Base):
    __tablename__ = "affiliates"
    id = _id_column()
    user_id = Column(String, ForeignKey("users.id"), nullable=False,
                     unique=True)
    ref_code = Column(String, nullable=False, unique=True)
    # ACTIVE | INACTIVE
    status = Column(String, nullable=False, default="ACTIVE")
    password_hash = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now,
                        onupdate=now)

    user = relationship("User", lazy="selectin")
    commission_rules = relationship("AffiliateCommissionRule",
                                    back_populates="affiliate",
                                    lazy="selectin",
                                    cascade="all, delete-orphan")


class AffiliateCommissionRule(Base):
    __tablename__ = "affiliate_commission_rules"
    id = _id_column()
    affiliate_id = Column(String, ForeignKey("affiliates.id"), nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    # PERCENTAGE (rate, 0.1 = 10%) | FIXED_AMOUNT (amount per ticket)
    commission_type = Column(String, nullable=False)
    rate = Column(Float, nullable=True)
    amount = Column(Float, nullable=True)

    affiliate = relationship("Affiliate", back_populates="commission_rules")
    ticket_type = relationship("TicketType", lazy="selectin")


class AffiliateCommission(Base):
    __tablename__ = "affiliate_commissions"
    id = _id_column()
    affiliate_id = Column(String, ForeignKey("affiliates.id"), nullable=False)
    order_item_id = Column(String, ForeignKey("order_items.id"),
                           nullable=False, unique=True)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    commission_amount = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)


class NewsletterSubscriber(Base):
    __tablename__ = "newsletter_subscribers"
    id = _id_column()
    email = Column(String, nullable=False, unique=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now,
                        onupdate=now)


class Discount(Base):
    __tablename__ = "discounts"
    id = _id_column()
    code = Column(String, nullable=False, unique=True)
    type = Column(String, nullable=False, default="PERCENTAGE")
    percentage = Column(Float, nullable=False)  # 0.1 for 10%
    is_active = Column(Boolean, nullable=False, default=True)
    usage_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now,
                        onupdate=now)
