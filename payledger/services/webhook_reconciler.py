"""Apply asynchronous gateway notifications to the ledger.

The notification only says *which* order changed. Amount and status always
come from a fresh ``get_order`` call, never from the webhook body. Any
failure is logged and absorbed: the gateway's redelivery is the retry.
"""

import logging
from typing import Any, Dict, Optional

from payledger.db.session import SessionLocal
from payledger.gateway.base import PaymentGateway
from payledger.gateway.registry import get_gateway
from payledger.models.payment import PaymentRecord
from payledger.services import ledger_store, lifecycle_service
from payledger.services.lifecycle_service import SettlementResult


async def reconcile_notification(
    payload: Dict[str, Any], gateway: Optional[PaymentGateway] = None
) -> Optional[SettlementResult]:
    gateway = gateway or get_gateway()
    try:
        notification = gateway.parse_notification(payload or {})
        if notification is None:
            logging.info(
                "Webhook ignored: %s",
                (payload or {}).get("event_type")
                or (payload or {}).get("eventType")
                or (payload or {}).get("event"),
            )
            return None

        async with SessionLocal() as db:
            order_id = notification.order_id
            if not order_id and notification.capture_id:
                known = await ledger_store.find_one(
                    db, PaymentRecord.gateway_capture_id == notification.capture_id
                )
                order_id = known.gateway_order_id if known else None
            if not order_id:
                logging.warning(
                    "Webhook %s without resolvable order id (capture=%s); left unresolved",
                    notification.event_type,
                    notification.capture_id,
                )
                return None

            order = await gateway.get_order(order_id)
            result = await lifecycle_service.settle_capture(
                db,
                order.order_id,
                order.capture_id or notification.capture_id,
                order.status,
                order.amount,
                order.currency,
                payer=order.payer,
                captured_at=order.captured_at,
                gateway_payload=order.raw,
                reference=order.reference,
            )
            logging.info(
                "Webhook %s reconciled: payment %s status=%s transitioned=%s",
                notification.event_type,
                result.record.id,
                result.record.status,
                result.transitioned,
            )
            return result
    except Exception:
        logging.exception("Webhook reconciliation failed")
        return None
