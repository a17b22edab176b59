"""Server-initiated checkout: create the gateway order and capture it."""

import logging
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from payledger.errors import UpstreamGatewayError
from payledger.gateway.base import PaymentGateway
from payledger.models.payment import PENDING_STATUSES, TERMINAL_STATUSES, PaymentRecord
from payledger.services import ledger_store, lifecycle_service
from payledger.services.lifecycle_service import SettlementResult


async def create_order(
    db: AsyncSession,
    gateway: PaymentGateway,
    owner_id,
    plan: str,
    billing_period: Optional[str] = "monthly",
    amount=None,
    reason: Optional[str] = None,
) -> Tuple[PaymentRecord, str]:
    owner_id = lifecycle_service.validate_owner(owner_id)
    plan = lifecycle_service.validate_identifier(plan, "plan")

    # Уже есть незавершённый заказ по этому плану: отдаём его же
    existing = await ledger_store.find_one(
        db,
        PaymentRecord.owner_id == owner_id,
        PaymentRecord.plan == plan,
        PaymentRecord.status.in_(PENDING_STATUSES),
        PaymentRecord.gateway_order_id.is_not(None),
    )
    if existing is not None:
        logging.info("create_order: reusing order %s for user %s", existing.gateway_order_id, owner_id)
        return existing, existing.gateway_order_id

    record = await lifecycle_service.provisional_create(
        db, owner_id, plan, billing_period, amount=amount, reason=reason
    )
    if record.gateway_order_id:
        return record, record.gateway_order_id

    purchase_units = [
        {
            "reference_id": str(record.id),
            "custom_id": str(record.id),
            "amount": {"currency_code": record.currency, "value": f"{record.amount:.2f}"},
            "description": f"{plan} subscription ({billing_period or 'one-off'})",
        }
    ]
    order_id = await gateway.create_order(purchase_units)
    record = await lifecycle_service.attach_order(db, owner_id, record.id, order_id)
    return record, order_id


async def capture_order(
    db: AsyncSession, gateway: PaymentGateway, owner_id, order_id: str
) -> SettlementResult:
    """Capture synchronously and settle the row for ``owner_id``.

    A capture rejected because the order is already final (double click,
    webhook got there first) falls back to reading the order state.
    """
    owner_id = lifecycle_service.validate_owner(owner_id)
    order_id = lifecycle_service.validate_identifier(order_id, "order id")

    try:
        order = await gateway.capture_order(order_id)
    except UpstreamGatewayError as capture_error:
        order = await gateway.get_order(order_id)
        if order.status not in TERMINAL_STATUSES:
            raise capture_error
        logging.info("capture_order: order %s was already %s at the gateway", order_id, order.status)

    return await lifecycle_service.settle_capture(
        db,
        order.order_id,
        order.capture_id,
        order.status,
        order.amount,
        order.currency,
        payer=order.payer,
        owner_id=owner_id,
        captured_at=order.captured_at,
        gateway_payload=order.raw,
        reference=order.reference,
    )
