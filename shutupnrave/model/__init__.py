from .orm import (
    Base, User, TicketType, Order, OrderItem, Admin, Affiliate,
    AffiliateCommissionRule, AffiliateCommission, NewsletterSubscriber,
    Discount,
)

__all__ = [
    "Base", "User", "TicketType", "Order", "OrderItem", "Admin", "Affiliate",
    "AffiliateCommissionRule", "AffiliateCommission", "NewsletterSubscriber",
    "Discount",
]
