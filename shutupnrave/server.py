from __future__ import annotations
import json
import logging
import os
import time
import uuid
from typing import Optional
from urllib.parse import quote

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, Form
from fastapi.responses import (
    HTMLResponse, RedirectResponse, ORJSONResponse, Response,
)
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.status import HTTP_303_SEE_OTHER

from .auth import (
    AdminUser, AffiliateUser, login_admin, login_affiliate,
    verify_admin_token, verify_affiliate_token, set_auth_cookie,
    clear_auth_cookie,
)
from .config import (
    DATABASE_URL, PAYMENT_BACKEND, PAYSTACK_SECRET_KEY, MOCK_WEBHOOK_URL,
    ADMIN_TOKEN_COOKIE, AFFILIATE_TOKEN_COOKIE, SITE_NAME, EVENT_NAME,
    EVENT_DATE, EVENT_TIME, EVENT_LOCATION, TICKET_CATALOG, MAX_TICKETS,
    PROCESSING_FEE_RATE, configure_logging,
)
from .emails import Mailer
from .helpers import format_naira, to_iso
from .infra.sql import make_async_engine
from .model import Base, Order
from .model import admin as admin_model
from .model import affiliates, audience, discounts, orders
from .payments import PaymentAdapter, Paystack, MockPay

logger = logging.getLogger(__name__)

_HERE = os.path.dirname(__file__)
templates = Jinja2Templates(directory=os.path.join(_HERE, "templates"))
templates.env.filters["naira"] = format_naira
templates.env.globals.update(
    site_name=SITE_NAME,
    event_name=EVENT_NAME,
    event_date=EVENT_DATE,
    event_time=EVENT_TIME,
    event_location=EVENT_LOCATION,
)

engine, SessionAsync = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


app = FastAPI(
    title=SITE_NAME,
    default_response_class=ORJSONResponse,
)
app.mount("/static", StaticFiles(directory=os.path.join(_HERE, "static")),
          name="static")


def payment_adapter() -> PaymentAdapter:
    adapter = getattr(app.state, "payments", None)
    if adapter is None:
        raise RuntimeError("payment adapter not initialized")
    return adapter


def mailer() -> Mailer:
    m = getattr(app.state, "mailer", None)
    if m is None:
        m = Mailer(getattr(app.state, "http", None))
    return m


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    configure_logging()
    logger.info("%s is starting up (payments: %s)", SITE_NAME,
                PAYMENT_BACKEND)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(timeout=10.0)
    if PAYMENT_BACKEND == "paystack":
        app.state.payments = Paystack(app.state.http, PAYSTACK_SECRET_KEY)
    else:
        app.state.payments = MockPay()
    app.state.mailer = Mailer(app.state.http)


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


# ----------------------------
# Helpers
# ----------------------------
async def current_admin(request: Request,
                        db: AsyncSession) -> Optional[AdminUser]:
    return await verify_admin_token(
        db, request.cookies.get(ADMIN_TOKEN_COOKIE)
    )


async def current_affiliate(request: Request,
                            db: AsyncSession) -> Optional[AffiliateUser]:
    return await verify_affiliate_token(
        db, request.cookies.get(AFFILIATE_TOKEN_COOKIE)
    )


def admin_login_redirect(request: Request) -> RedirectResponse:
    # preserve where we wanted to go
    dest = quote(request.url.path)
    return RedirectResponse(url=f"/admin-login?next={dest}", status_code=307)


def safe_next(next: Optional[str], default: str) -> str:
    if next and next.startswith("/") and not next.startswith("//"):
        return next
    return default


def order_json(order: Order) -> dict:
    return {
        "order_id": order.order_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "is_active": order.is_active,
        "subtotal": order.subtotal,
        "discount_code": order.discount_code,
        "discount_amount": order.discount_amount,
        "processing_fee": order.processing_fee,
        "total": order.total,
        "items": [
            {
                "ticket_type": item.ticket_type.name,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "total_price": item.total_price,
            }
            for item in order.items
        ],
        "created_at": to_iso(order.created_at),
    }


# ----------------------------
# Marketing pages
# ----------------------------
@app.get("/")
async def root():
    return RedirectResponse(url="/home", status_code=307)


@app.get("/home", response_class=HTMLResponse)
async def home_page(request: Request):
    return templates.TemplateResponse(request, "home.html", {
        "catalog": TICKET_CATALOG,
    })


@app.post("/api/newsletter")
async def newsletter_subscribe(payload: dict,
                               db: AsyncSession = Depends(get_db)):
    return await audience.subscribe_to_newsletter(db, payload.get("email"))


# ----------------------------
# Ticket checkout
# ----------------------------
@app.get("/tickets", response_class=HTMLResponse)
async def tickets_page(request: Request, ref: Optional[str] = None,
                       status: Optional[str] = None,
                       order_id: Optional[str] = None):
    return templates.TemplateResponse(request, "tickets.html", {
        "catalog": TICKET_CATALOG,
        "max_tickets": MAX_TICKETS,
        "fee_rate": PROCESSING_FEE_RATE,
        "ref": ref or "",
        "status": status,
        "order_id": order_id,
    })


@app.post("/api/checkout")
async def create_checkout(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payment_adapter),
):
    user_data = {
        "full_name": payload.get("full_name") or "",
        "phone": payload.get("phone") or "",
        "email": payload.get("email") or "",
    }
    order_data = {
        "ticket_type": payload.get("ticket_type") or "",
        "quantity": payload.get("quantity") or 0,
    }
    result = await orders.initialize_payment(
        db, adapter, user_data, order_data,
        affiliate_ref=payload.get("ref"),
        discount_code=payload.get("discount_code"),
    )
    if not result["success"]:
        return ORJSONResponse(result, status_code=400)
    return result


@app.get("/tickets/payment-success", response_class=HTMLResponse)
async def payment_success_page(
    request: Request,
    reference: Optional[str] = None,
    trxref: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payment_adapter),
    m: Mailer = Depends(mailer),
):
    reference = reference or trxref
    if not reference:
        result = {"success": False, "error": "No payment reference provided"}
    else:
        result = await orders.verify_payment(db, adapter, m, reference)
    return templates.TemplateResponse(request, "payment_success.html", {
        "order": result.get("order"),
        "error": result.get("error"),
    })


# ----------------------------
# API: Order status
# ----------------------------
@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: AsyncSession = Depends(get_db)):
    result = await orders.get_order(db, order_id)
    if not result["success"]:
        raise HTTPException(500, detail=result["error"])
    if result["order"] is None:
        raise HTTPException(404, detail="order not found")
    return order_json(result["order"])


# ----------------------------
# Webhook endpoint (shared for Mock/Paystack)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payment_adapter),
    m: Mailer = Depends(mailer),
):
    payload = await request.body()
    headers = dict(request.headers)
    event = adapter.verify_webhook(payload, headers)

    kind = adapter.event_kind(event)  # succeeded | failed | ...
    reference = adapter.event_reference(event)
    if not reference:
        raise HTTPException(400, detail="missing reference")

    if kind == "succeeded":
        result = await orders.verify_payment(db, adapter, m, reference)
        if not result["success"]:
            logger.warning("webhook for %s not applied: %s", reference,
                           result["error"])
        return {"ok": result["success"], "order_status": (
            result["order"].status if result["success"] else None
        )}
    if kind == "failed":
        result = await orders.mark_payment_failed(db, reference)
        if not result["success"]:
            # non-2xx makes the provider retry the event
            raise HTTPException(500, detail=result["error"])
        return {"ok": True,
                "order_status": "FAILED" if result["changed"] else None}
    return {"ok": True, "ignored": True}


# ----------------------------
# MockPay UI (simple page with 2 buttons)
# ----------------------------
@app.get("/mockpay/{reference}", response_class=HTMLResponse)
async def mockpay_screen(
    request: Request, reference: str,
    db: AsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payment_adapter),
):
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, "not found")
    result = await orders.get_order(db, reference)
    if not result.get("order"):
        raise HTTPException(404, "order not found")
    return templates.TemplateResponse(request, "mockpay.html", {
        "order": result["order"],
        "webhook_url": MOCK_WEBHOOK_URL,
    })


@app.post("/mockpay/{reference}/emit")
async def mockpay_emit(
    reference: str,
    t: str = Form(...),
    db: AsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payment_adapter),
):
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, "not found")
    if t not in {"succeeded", "failed"}:
        raise HTTPException(400, detail="invalid kind")
    result = await orders.get_order(db, reference)
    order = result.get("order")
    if not order:
        raise HTTPException(404, "order not found")

    adapter.emit(reference, t)
    event = {
        "type": f"payment.{t}",
        "reference": reference,
        "amount": order.total,
        "currency": "NGN",
        "created_at": int(time.time()),
        "idempotency_key": f"evt_{uuid.uuid4().hex}",
    }
    payload = json.dumps(event).encode()

    client_http: Optional[httpx.AsyncClient] = getattr(app.state, "http",
                                                       None)
    if client_http is not None:
        try:
            await client_http.post(
                MOCK_WEBHOOK_URL,
                content=payload,
                headers={
                    "x-mockpay-signature": adapter.sign(payload),
                    "content-type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            # the success page verifies again, so the redirect still works
            logger.warning("Webhook delivery failed: %s", e)

    if t == "succeeded":
        return RedirectResponse(
            url=f"/tickets/payment-success?reference={quote(reference)}",
            status_code=HTTP_303_SEE_OTHER,
        )
    return RedirectResponse(
        url=f"/tickets?status=failed&order_id={quote(reference)}",
        status_code=HTTP_303_SEE_OTHER,
    )


# ----------------------------
# Admin login
# ----------------------------
@app.get("/admin-login", response_class=HTMLResponse)
async def admin_login_get(request: Request, next: Optional[str] = None,
                          db: AsyncSession = Depends(get_db)):
    if await current_admin(request, db):
        return RedirectResponse(url=safe_next(next, "/admin-page"),
                                status_code=HTTP_303_SEE_OTHER)
    return templates.TemplateResponse(request, "admin_login.html", {
        "next": next or "/admin-page",
        "error": None,
        "email": "",
    })


@app.post("/admin-login", response_class=HTMLResponse)
async def admin_login_post(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    next: str = Form("/admin-page"),
    db: AsyncSession = Depends(get_db),
):
    result, token = await login_admin(db, email, password)
    if result["success"] and token:
        response = RedirectResponse(url=safe_next(next, "/admin-page"),
                                    status_code=HTTP_303_SEE_OTHER)
        set_auth_cookie(response, ADMIN_TOKEN_COOKIE, token)
        return response
    # auth failed
    return templates.TemplateResponse(
        request, "admin_login.html",
        {"next": next, "error": result["error"], "email": email},
        status_code=401,
    )


@app.api_route("/admin-logout", methods=["GET", "POST"])
async def admin_logout():
    response = RedirectResponse(url="/admin-login",
                                status_code=HTTP_303_SEE_OTHER)
    clear_auth_cookie(response, ADMIN_TOKEN_COOKIE)
    return response


# ----------------------------
# Admin dashboard
# ----------------------------
@app.get("/admin-page", response_class=HTMLResponse)
async def admin_page(
    request: Request,
    q: str = "",
    status: str = "all",
    active: str = "all",
    page: int = 1,
    db: AsyncSession = Depends(get_db),
):
    admin = await current_admin(request, db)
    if admin is None:
        return admin_login_redirect(request)

    result = await admin_model.get_orders_with_filters(db, q, status, active,
                                                       page)
    all_orders = result.get("all_orders", [])
    pending = admin_model.pending_tickets(all_orders)
    return templates.TemplateResponse(request, "admin_page.html", {
        "admin": admin,
        "result": result,
        "filters": {"q": q, "status": status, "active": active},
        "stats": admin_model.dashboard_statistics(all_orders),
        "pending": pending,
        "pending_stats": admin_model.pending_ticket_stats(all_orders),
        "pending_status_text": admin_model.pending_status_text,
    })


# --- affiliates ---
@app.get("/admin-page/affiliates", response_class=HTMLResponse)
async def admin_affiliates_page(
    request: Request,
    q: str = "",
    page: int = 1,
    db: AsyncSession = Depends(get_db),
):
    admin = await current_admin(request, db)
    if admin is None:
        return admin_login_redirect(request)
    result = await affiliates.get_affiliates(db, q, page)
    return templates.TemplateResponse(request, "admin_affiliates.html", {
        "admin": admin,
        "result": result,
        "q": q,
        "created": None,
    })


@app.post("/admin-page/affiliates", response_class=HTMLResponse)
async def admin_create_affiliate(
    request: Request,
    email: str = Form(""),
    full_name: str = Form(""),
    phone_number: str = Form(""),
    password: str = Form(""),
    db: AsyncSession = Depends(get_db),
    m: Mailer = Depends(mailer),
):
    admin = await current_admin(request, db)
    if admin is None:
        return RedirectResponse(url="/admin-login?next=/admin-page/affiliates",
                                status_code=HTTP_303_SEE_OTHER)
    created = await affiliates.create_affiliate_and_send_email(db, m, {
        "email": email,
        "full_name": full_name or None,
        "phone_number": phone_number or None,
        "password": password or None,
    })
    result = await affiliates.get_affiliates(db)
    return templates.TemplateResponse(
        request, "admin_affiliates.html",
        {"admin": admin, "result": result, "q": "", "created": created},
        status_code=200 if created["success"] else 400,
    )


@app.get("/admin-page/affiliates/{affiliate_id}", response_class=HTMLResponse)
async def admin_affiliate_detail(
    request: Request,
    affiliate_id: str,
    db: AsyncSession = Depends(get_db),
):
    admin = await current_admin(request, db)
    if admin is None:
        return admin_login_redirect(request)
    result = await affiliates.get_affiliate_details(db, affiliate_id)
    return templates.TemplateResponse(
        request, "admin_affiliate_detail.html",
        {
            "admin": admin,
            "result": result,
            "catalog": TICKET_CATALOG,
            "rule_error": request.query_params.get("rule_error"),
        },
        status_code=200 if result["success"] else 404,
    )


@app.post("/admin-page/affiliates/{affiliate_id}/rules")
async def admin_affiliate_rule(
    request: Request,
    affiliate_id: str,
    ticket_type: str = Form(...),
    commission_type: str = Form(...),
    value: float = Form(...),
    db: AsyncSession = Depends(get_db),
):
    if await current_admin(request, db) is None:
        return RedirectResponse(url="/admin-login",
                                status_code=HTTP_303_SEE_OTHER)
    result = await affiliates.set_commission_rule(
        db, affiliate_id, ticket_type, commission_type, value
    )
    url = f"/admin-page/affiliates/{quote(affiliate_id)}"
    if not result["success"]:
        url += f"?rule_error={quote(result['error'])}"
    return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)


# --- emails ---
@app.get("/admin-page/emails", response_class=HTMLResponse)
async def admin_emails_page(
    request: Request,
    q: str = "",
    source: str = "all",
    active: str = "all",
    page: int = 1,
    db: AsyncSession = Depends(get_db),
):
    admin = await current_admin(request, db)
    if admin is None:
        return admin_login_redirect(request)
    result = await audience.get_all_emails(db, q, source, active, page)
    return templates.TemplateResponse(request, "admin_emails.html", {
        "admin": admin,
        "result": result,
        "filters": {"q": q, "source": source, "active": active},
    })


@app.get("/admin-page/emails/export")
async def admin_emails_export(
    request: Request,
    q: str = "",
    source: str = "all",
    active: str = "all",
    db: AsyncSession = Depends(get_db),
):
    if await current_admin(request, db) is None:
        return admin_login_redirect(request)
    result = await audience.export_emails(db, q, source, active)
    if not result["success"]:
        raise HTTPException(500, detail=result["error"])
    return Response(
        content=result["csv_content"],
        media_type="text/csv",
        headers={
            "Content-Disposition":
                f'attachment; filename="{result["filename"]}"',
        },
    )


# --- discounts ---
@app.get("/admin-page/discounts", response_class=HTMLResponse)
async def admin_discounts_page(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    admin = await current_admin(request, db)
    if admin is None:
        return admin_login_redirect(request)
    result = await discounts.list_discounts(db)
    return templates.TemplateResponse(request, "admin_discounts.html", {
        "admin": admin,
        "result": result,
        "error": request.query_params.get("error"),
    })


def _discounts_redirect(result: dict) -> RedirectResponse:
    url = "/admin-page/discounts"
    if not result["success"]:
        url += f"?error={quote(result['error'])}"
    return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)


def _percentage(value: str) -> Optional[float]:
    # the form takes whole percents, e.g. 10 for 10%
    try:
        return float(value) / 100
    except (TypeError, ValueError):
        return None


@app.post("/admin-page/discounts")
async def admin_create_discount(
    request: Request,
    code: str = Form(""),
    percentage: str = Form(""),
    is_active: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db),
):
    if await current_admin(request, db) is None:
        return RedirectResponse(url="/admin-login",
                                status_code=HTTP_303_SEE_OTHER)
    result = await discounts.create_discount(db, {
        "code": code or None,
        "percentage": _percentage(percentage),
        "is_active": is_active is not None,
    })
    return _discounts_redirect(result)


@app.post("/admin-page/discounts/{discount_id}/update")
async def admin_update_discount(
    request: Request,
    discount_id: str,
    code: str = Form(""),
    percentage: str = Form(""),
    is_active: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db),
):
    if await current_admin(request, db) is None:
        return RedirectResponse(url="/admin-login",
                                status_code=HTTP_303_SEE_OTHER)
    result = await discounts.update_discount(db, discount_id, {
        "code": code,
        "percentage": _percentage(percentage),
        "is_active": is_active is not None,
    })
    return _discounts_redirect(result)


@app.post("/admin-page/discounts/{discount_id}/toggle")
async def admin_toggle_discount(
    request: Request,
    discount_id: str,
    is_active: str = Form(...),
    db: AsyncSession = Depends(get_db),
):
    if await current_admin(request, db) is None:
        return RedirectResponse(url="/admin-login",
                                status_code=HTTP_303_SEE_OTHER)
    result = await discounts.set_discount_active(db, discount_id,
                                                 is_active == "true")
    return _discounts_redirect(result)


@app.post("/admin-page/discounts/{discount_id}/delete")
async def admin_delete_discount(
    request: Request,
    discount_id: str,
    db: AsyncSession = Depends(get_db),
):
    if await current_admin(request, db) is None:
        return RedirectResponse(url="/admin-login",
                                status_code=HTTP_303_SEE_OTHER)
    result = await discounts.delete_discount(db, discount_id)
    return _discounts_redirect(result)


# --- ticket verification (QR code / link target) ---
@app.get("/admin-page/{order_id}", response_class=HTMLResponse)
async def admin_order_page(
    request: Request,
    order_id: str,
    confirm: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    admin = await current_admin(request, db)
    if admin is None:
        return RedirectResponse(url=f"/admin-page/{quote(order_id)}/login",
                                status_code=307)
    result = await orders.get_order_for_admin(db, order_id)
    order = result.get("order")
    return templates.TemplateResponse(
        request, "admin_order.html",
        {
            "admin": admin,
            "order_id": order_id,
            "order": order,
            "confirming": bool(confirm),
            "message": None,
            "error": result.get("error"),
        },
        status_code=200 if order else 404,
    )


@app.get("/admin-page/{order_id}/login", response_class=HTMLResponse)
async def admin_order_login(request: Request, order_id: str,
                            db: AsyncSession = Depends(get_db)):
    dest = f"/admin-page/{quote(order_id)}"
    if await current_admin(request, db):
        return RedirectResponse(url=dest, status_code=HTTP_303_SEE_OTHER)
    return templates.TemplateResponse(request, "admin_login.html", {
        "next": dest,
        "error": None,
        "email": "",
        "order_id": order_id,
    })


@app.post("/admin-page/{order_id}/deactivate", response_class=HTMLResponse)
async def admin_deactivate_ticket(
    request: Request,
    order_id: str,
    confirm: str = Form(""),
    db: AsyncSession = Depends(get_db),
):
    admin = await current_admin(request, db)
    dest = f"/admin-page/{quote(order_id)}"
    if admin is None:
        return RedirectResponse(url=f"{dest}/login",
                                status_code=HTTP_303_SEE_OTHER)
    # deactivation is irreversible, the form must carry the confirmation
    if confirm != "yes":
        return RedirectResponse(url=f"{dest}?confirm=1",
                                status_code=HTTP_303_SEE_OTHER)

    result = await admin_model.deactivate_ticket_action(db, order_id)
    order = (await orders.get_order_for_admin(db, order_id)).get("order")
    return templates.TemplateResponse(
        request, "admin_order.html",
        {
            "admin": admin,
            "order_id": order_id,
            "order": order,
            "confirming": False,
            "message": "Ticket deactivated" if result["success"] else None,
            "error": result.get("error"),
        },
        status_code=200 if result["success"] else 400,
    )


# ----------------------------
# Affiliate portal
# ----------------------------
@app.get("/affiliate", response_class=HTMLResponse)
async def affiliate_dashboard(request: Request,
                              db: AsyncSession = Depends(get_db)):
    me = await current_affiliate(request, db)
    if me is None:
        return RedirectResponse(url="/affiliate/login", status_code=307)
    stats = await affiliates.affiliate_stats(db, me.id)
    return templates.TemplateResponse(request, "affiliate_dashboard.html", {
        "me": me,
        "link": affiliates.referral_link(me.ref_code),
        "stats": stats,
    })


@app.get("/affiliate/login", response_class=HTMLResponse)
async def affiliate_login_get(request: Request,
                              db: AsyncSession = Depends(get_db)):
    if await current_affiliate(request, db):
        return RedirectResponse(url="/affiliate",
                                status_code=HTTP_303_SEE_OTHER)
    return templates.TemplateResponse(request, "affiliate_login.html", {
        "error": None,
        "email": "",
    })


@app.post("/affiliate/login", response_class=HTMLResponse)
async def affiliate_login_post(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    db: AsyncSession = Depends(get_db),
):
    result, token = await login_affiliate(db, email, password)
    if result["success"] and token:
        response = RedirectResponse(url="/affiliate",
                                    status_code=HTTP_303_SEE_OTHER)
        set_auth_cookie(response, AFFILIATE_TOKEN_COOKIE, token)
        return response
    return templates.TemplateResponse(
        request, "affiliate_login.html",
        {"error": result["error"], "email": email},
        status_code=401,
    )


@app.api_route("/affiliate/logout", methods=["GET", "POST"])
async def affiliate_logout():
    response = RedirectResponse(url="/affiliate/login",
                                status_code=HTTP_303_SEE_OTHER)
    clear_auth_cookie(response, AFFILIATE_TOKEN_COOKIE)
    return response
