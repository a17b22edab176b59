"""Runtime settings read from the environment (and ``.env`` if present)."""

import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

PAYMENT_GATEWAY = os.getenv("PAYMENT_GATEWAY", "paypal").strip().lower()

PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "")
PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "")
PAYPAL_API_BASE = os.getenv("PAYPAL_API_BASE", "https://api-m.sandbox.paypal.com")

YOOKASSA_SHOP_ID = os.getenv("YOOKASSA_SHOP_ID", "")
YOOKASSA_SECRET_KEY = os.getenv("YOOKASSA_SECRET_KEY", "")

RETURN_URL = os.getenv("PAYMENT_RETURN_URL", "http://localhost:3000/checkout/return")
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD").upper()
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))

# A client-reported createdAt further than this from server time is ignored.
CLIENT_CLOCK_SKEW_SECONDS = int(os.getenv("CLIENT_CLOCK_SKEW_SECONDS", "300"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")

# Fallback prices, used only when the caller does not send an amount.
PLAN_PRICES = {
    ("pro", "monthly"): Decimal(os.getenv("PLAN_PRICE_PRO_MONTHLY", "12.99")),
    ("pro", "yearly"): Decimal(os.getenv("PLAN_PRICE_PRO_YEARLY", "99.00")),
    ("tutor", "monthly"): Decimal(os.getenv("PLAN_PRICE_TUTOR_MONTHLY", "24.99")),
    ("tutor", "yearly"): Decimal(os.getenv("PLAN_PRICE_TUTOR_YEARLY", "199.00")),
}

# Days of access granted per billing period; other periods leave expiry untouched.
BILLING_PERIOD_DAYS = {
    "monthly": 30,
    "yearly": 365,
}


def plan_price(plan, billing_period):
    """Return the configured price for ``plan``/``billing_period`` or ``None``."""
    return PLAN_PRICES.get(((plan or "").lower(), (billing_period or "").lower()))
