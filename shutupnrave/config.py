import logging
import os
import sys

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./shutupnrave.db")

JWT_SECRET = os.environ.get("JWT_SECRET", "fallback-secret-key")
APP_URL = os.environ.get("NEXT_PUBLIC_APP_URL", "https://shutupnrave.com")
NODE_ENV = os.environ.get("NODE_ENV", "development")
IS_PRODUCTION = NODE_ENV == "production"

# 'paystack' | 'mock'
PAYMENT_BACKEND = os.environ.get("PAYMENT_BACKEND", "mock").lower()
PAYSTACK_SECRET_KEY = os.environ.get("PAYSTACK_SECRET_KEY", "")
PAYSTACK_BASE_URL = os.environ.get(
    "PAYSTACK_BASE_URL", "https://api.paystack.co"
)
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)

RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
RESEND_FROM_EMAIL = os.environ.get("RESEND_FROM_EMAIL", "")
ADMIN_NOTIFICATION_EMAIL = os.environ.get("ADMIN_NOTIFICATION_EMAIL", "")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

ADMIN_TOKEN_COOKIE = "admin-token"
AFFILIATE_TOKEN_COOKIE = "affiliate-token"
TOKEN_EXPIRES_SECONDS = 24 * 60 * 60  # 1 day

SITE_NAME = "ShutUpNRave"
EVENT_NAME = "shutupnraveee 2025"
EVENT_DATE = "Nov 29, 2025"
EVENT_TIME = "12 NOON - 12 MIDNIGHT"
EVENT_LOCATION = "Lagos, Nigeria"

# prices in NGN
TICKET_CATALOG = {
    "Solo Vibes": {
        "slug": "single",
        "price": 3500,
        "description": "Individual tickets",
        "admits": 1,
    },
    "Geng Energy": {
        "slug": "geng",
        "price": 15000,
        "description": "Group of 4",
        "admits": 4,
    },
}
PROCESSING_FEE_RATE = 0.05
MAX_TICKETS = 5


def configure_logging(level: str = LOG_LEVEL) -> None:
    root = logging.getLogger()
    if any(getattr(h, "_shutupnrave", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s"
    ))
    handler._shutupnrave = True
    root.addHandler(handler)
    root.setLevel(level)
