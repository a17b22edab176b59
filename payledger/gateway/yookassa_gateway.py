"""YooKassa adapter built on the official ``yookassa`` SDK.

YooKassa has a single payment object: its id serves as both the order id and
the capture id of the ledger.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from yookassa import Configuration, Payment

from payledger import config
from payledger.errors import UpstreamGatewayError
from payledger.gateway.base import (
    GatewayNotification,
    GatewayOrder,
    PayerInfo,
    parse_decimal,
    parse_timestamp,
)
from payledger.models.payment import (
    STATUS_ATTACHED,
    STATUS_CANCELLED,
    STATUS_PENDING,
    STATUS_SETTLED,
)

PAYMENT_STATUSES = {
    "pending": STATUS_PENDING,
    "waiting_for_capture": STATUS_ATTACHED,
    "succeeded": STATUS_SETTLED,
    "canceled": STATUS_CANCELLED,
}

NOTIFICATION_EVENTS = (
    "payment.succeeded",
    "payment.canceled",
    "payment.waiting_for_capture",
)


def _configure_yookassa_or_raise():
    shop_id = config.YOOKASSA_SHOP_ID
    secret_key = config.YOOKASSA_SECRET_KEY
    if not shop_id or not secret_key:
        raise UpstreamGatewayError(
            "YOOKASSA credentials are not configured "
            "(set YOOKASSA_SHOP_ID and YOOKASSA_SECRET_KEY)."
        )
    Configuration.account_id = shop_id
    Configuration.secret_key = secret_key


def order_from_payment(payment: Dict[str, Any]) -> GatewayOrder:
    payment_id = payment.get("id")
    status = PAYMENT_STATUSES.get(str(payment.get("status") or ""))
    if not payment_id or status is None:
        raise UpstreamGatewayError(
            f"unexpected YooKassa payment shape (status={payment.get('status')!r})"
        )
    amount = payment.get("amount") or {}
    method = payment.get("payment_method") or {}
    return GatewayOrder(
        order_id=str(payment_id),
        status=status,
        amount=parse_decimal(amount.get("value")),
        currency=str(amount.get("currency") or config.DEFAULT_CURRENCY).upper(),
        capture_id=str(payment_id) if status == STATUS_SETTLED else None,
        payer=PayerInfo(name=method.get("title")),
        captured_at=parse_timestamp(payment.get("captured_at") or payment.get("created_at")),
        raw=payment,
        reference=(payment.get("metadata") or {}).get("payment_id"),
    )


class YooKassaGateway:
    name = "yookassa"

    async def _call(self, func, *args):
        _configure_yookassa_or_raise()
        try:
            result = await asyncio.to_thread(func, *args)
        except Exception as exc:
            logging.exception("YooKassa call %s failed", getattr(func, "__name__", func))
            raise UpstreamGatewayError(f"YooKassa error: {exc}", cause=exc) from exc
        return json.loads(result.json())

    async def create_order(self, purchase_units: List[Dict[str, Any]]) -> str:
        unit = purchase_units[0]
        money = unit["amount"]
        payment = await self._call(
            Payment.create,
            {
                "amount": {"value": money["value"], "currency": money["currency_code"]},
                "confirmation": {"type": "redirect", "return_url": config.RETURN_URL},
                "capture": False,
                "description": unit.get("description", ""),
                "metadata": {"payment_id": unit.get("custom_id")},
            },
            str(uuid4()),
        )
        return str(payment["id"])

    async def capture_order(self, order_id: str) -> GatewayOrder:
        return order_from_payment(await self._call(Payment.capture, order_id))

    async def get_order(self, order_id: str) -> GatewayOrder:
        return order_from_payment(await self._call(Payment.find_one, order_id))

    def parse_notification(self, payload: Dict[str, Any]) -> Optional[GatewayNotification]:
        event = payload.get("event")
        obj = payload.get("object") or {}
        if event not in NOTIFICATION_EVENTS or not obj.get("id"):
            return None
        return GatewayNotification(event_type=event, order_id=str(obj["id"]))
