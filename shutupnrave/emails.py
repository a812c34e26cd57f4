from __future__ import annotations
import logging
import os
from typing import List, Optional, Dict, Any

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .config import (
    APP_URL, SITE_NAME, RESEND_API_KEY, RESEND_FROM_EMAIL,
)
from .helpers import format_naira

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"

_TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "templates", "emails")
env = Environment(
    loader=FileSystemLoader(_TEMPLATE_DIR),
    autoescape=select_autoescape(["html"]),
)
env.filters["naira"] = format_naira


class EmailError(RuntimeError):
    pass


class Mailer:
    def __init__(self, http: Optional[httpx.AsyncClient],
                 api_key: str = RESEND_API_KEY,
                 from_email: str = RESEND_FROM_EMAIL,
                 sender_name: str = SITE_NAME) -> None:
        self.http = http
        self.api_key = api_key
        self.from_email = from_email
        self.sender_name = sender_name

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.from_email and self.http)

    async def send(self, to: List[str], subject: str, html: str) -> Dict:
        if not self.configured:
            raise EmailError("Email service is not configured")
        r = await self.http.post(
            RESEND_URL,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "from": f"{self.sender_name} <{self.from_email}>",
                "to": to,
                "subject": subject,
                "html": html,
            },
        )
        if r.status_code >= 400:
            raise EmailError(f"email provider returned {r.status_code}")
        ack = r.json()
        logger.info("email sent to %s: %s", ",".join(to), ack.get("id"))
        return ack


# ----------------------------
# templates
# ----------------------------
def _items(order) -> List[Dict[str, Any]]:
    return [
        {
            "name": item.ticket_type.name,
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "total_price": item.total_price,
        }
        for item in order.items
    ]


def render_affiliate_welcome(*, full_name: str, ref_code: str, link: str,
                             email: str,
                             temporary_password: Optional[str] = None,
                             app_url: str = APP_URL) -> str:
    return env.get_template("affiliate_welcome.html").render(
        app_url=app_url,
        full_name=full_name,
        ref_code=ref_code,
        link=link,
        email=email,
        temporary_password=temporary_password,
    )


def verification_url(order_id: str, app_url: str = APP_URL) -> str:
    return f"{app_url}/admin-page/{order_id}"


def render_order_confirmation(order, app_url: str = APP_URL) -> str:
    return env.get_template("order_confirmation.html").render(
        app_url=app_url,
        customer_name=order.user.full_name,
        order_id=order.order_id,
        items=_items(order),
        subtotal=order.subtotal,
        discount_code=order.discount_code,
        discount_amount=order.discount_amount,
        processing_fee=order.processing_fee,
        total=order.total,
        event_name=order.event_name,
        event_date=order.event_date,
        event_time=order.event_time,
        event_location=order.event_location,
        verification_url=verification_url(order.order_id, app_url),
    )


def render_admin_order_notification(order, app_url: str = APP_URL) -> str:
    return env.get_template("admin_order_notification.html").render(
        app_url=app_url,
        order_id=order.order_id,
        customer_name=order.user.full_name,
        customer_email=order.user.email,
        customer_phone=order.user.phone_number,
        items=_items(order),
        subtotal=order.subtotal,
        discount_code=order.discount_code,
        discount_amount=order.discount_amount,
        processing_fee=order.processing_fee,
        total=order.total,
        affiliate_attributed=order.affiliate_id is not None,
    )


def render_affiliate_sale_notification(order, *, full_name: str,
                                       ref_code: str,
                                       commission_amount: float,
                                       app_url: str = APP_URL) -> str:
    return env.get_template("affiliate_sale_notification.html").render(
        app_url=app_url,
        full_name=full_name,
        ref_code=ref_code,
        order_id=order.order_id,
        items=_items(order),
        subtotal=order.subtotal,
        commission_amount=commission_amount,
    )
