"""Read-side projections of the ledger and owner-scoped cleanup."""

from typing import List

from sqlalchemy.ext.asyncio import AsyncSession

from payledger.errors import ConflictError, NotFoundError
from payledger.models.payment import PENDING_STATUSES, STATUS_SETTLED, PaymentRecord
from payledger.services import ledger_store
from payledger.services.entitlement_service import format_amount
from payledger.services.lifecycle_service import REASONS, validate_owner


def invoice_from_record(record: PaymentRecord) -> dict:
    """Public shape of a row; gateway payloads are never included."""
    return {
        "id": record.id,
        "date": record.created_at.isoformat() if record.created_at else None,
        "amount": f"{record.amount:.2f}",
        "currency": record.currency,
        "status": record.status,
        "receipt_url": f"/receipt/{record.id}",
        "reason": record.reason if record.reason in REASONS else "unknown",
        "change_to": record.change_to,
        "plan": record.plan,
        "billing_period": record.billing_period,
        "order_id": record.gateway_order_id,
        "client_correlation_token": record.client_correlation_token,
        "display_amount": format_amount(record.amount, record.currency),
    }


async def list_invoices(db: AsyncSession, owner_id, paid_limit: int = 10) -> List[dict]:
    """Pending-like rows first, then the latest settled ones."""
    owner_id = validate_owner(owner_id)
    pending = await ledger_store.find_all(
        db,
        PaymentRecord.owner_id == owner_id,
        PaymentRecord.status.in_(PENDING_STATUSES),
    )
    paid = await ledger_store.find_all(
        db,
        PaymentRecord.owner_id == owner_id,
        PaymentRecord.status == STATUS_SETTLED,
        limit=paid_limit,
    )
    return [invoice_from_record(r) for r in pending + paid]


async def get_payment_for_user(db: AsyncSession, owner_id, payment_id: int) -> PaymentRecord:
    owner_id = validate_owner(owner_id)
    record = await ledger_store.get_payment(db, payment_id)
    if record is None or record.owner_id != owner_id:
        raise NotFoundError("Payment not found")
    return record


async def delete_payment_for_user(db: AsyncSession, owner_id, payment_id: int) -> None:
    record = await get_payment_for_user(db, owner_id, payment_id)
    if record.is_terminal:
        raise ConflictError("final payments cannot be deleted")
    deleted = await ledger_store.delete_payments(
        db,
        PaymentRecord.id == record.id,
        PaymentRecord.owner_id == record.owner_id,
        PaymentRecord.status.in_(PENDING_STATUSES),
    )
    if not deleted:
        raise ConflictError("payment changed while deleting")


async def clear_pending_for_user(db: AsyncSession, owner_id) -> int:
    owner_id = validate_owner(owner_id)
    return await ledger_store.delete_payments(
        db,
        PaymentRecord.owner_id == owner_id,
        PaymentRecord.status.in_(PENDING_STATUSES),
    )


async def list_unresolved(db: AsyncSession, limit: int = 100) -> List[PaymentRecord]:
    """Rows the gateway reported that could not be tied to a user."""
    return await ledger_store.find_all(db, PaymentRecord.owner_id.is_(None), limit=limit)
