"""Derive a user's plan entitlement from the ledger and apply grants."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from payledger.config import BILLING_PERIOD_DAYS
from payledger.errors import StoreError
from payledger.models.payment import (
    PENDING_STATUSES,
    STATUS_SETTLED,
    PaymentRecord,
)
from payledger.models.user import FREE_PLAN, User
from payledger.services import ledger_store


@dataclass
class Entitlement:
    allowed: bool
    active_subscription: bool
    has_successful_payment: bool
    plan: Optional[str]
    plan_expiry: Optional[datetime]
    pending_amount: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self):
        return {
            "allowed": self.allowed,
            "activeSubscription": self.active_subscription,
            "hasSuccessfulPayment": self.has_successful_payment,
            "plan": self.plan,
            "planExpiry": self.plan_expiry.isoformat() if self.plan_expiry else None,
            "pendingAmount": self.pending_amount,
            "reason": self.reason,
        }


def format_amount(amount, currency) -> str:
    return f"{amount:.2f} {(currency or '').upper()}".strip()


def extended_expiry(current: Optional[datetime], billing_period: Optional[str], now: datetime):
    """New expiry for one more billing period, counted from the later of now and ``current``."""
    days = BILLING_PERIOD_DAYS.get((billing_period or "").lower())
    if days is None:
        return current
    base = current if current and current > now else now
    return base + timedelta(days=days)


async def compute_entitlement(
    db: AsyncSession, owner_id: int, now: Optional[datetime] = None
) -> Entitlement:
    now = now or ledger_store.utcnow()
    user = await db.get(User, owner_id, populate_existing=True)

    settled = await ledger_store.find_one(
        db,
        PaymentRecord.owner_id == owner_id,
        PaymentRecord.status == STATUS_SETTLED,
    )
    pending = await ledger_store.find_one(
        db,
        PaymentRecord.owner_id == owner_id,
        PaymentRecord.status.in_(PENDING_STATUSES),
    )
    pending_amount = format_amount(pending.amount, pending.currency) if pending else None
    has_settled = settled is not None

    if user is None:
        return Entitlement(
            allowed=False,
            active_subscription=False,
            has_successful_payment=has_settled,
            plan=None,
            plan_expiry=None,
            pending_amount=pending_amount,
            reason="user_not_found",
        )

    plan = user.plan or FREE_PLAN
    active = bool(user.plan_expiry and user.plan_expiry > now)
    allowed = plan.lower() == FREE_PLAN.lower() or active or has_settled
    return Entitlement(
        allowed=allowed,
        active_subscription=active,
        has_successful_payment=has_settled,
        plan=plan,
        plan_expiry=user.plan_expiry,
        pending_amount=pending_amount,
    )


async def apply_settlement(db: AsyncSession, record: PaymentRecord) -> Optional[User]:
    """Extend the owner's plan for a settled row, at most once per row.

    The row's ``entitlement_applied_at`` is claimed with a conditional update
    in the same transaction as the user change, so a redelivered capture or a
    concurrent webhook finds it already set and changes nothing. Returns the
    updated user when this call applied the grant, ``None`` otherwise.
    """
    if record.owner_id is None or record.status != STATUS_SETTLED:
        return None
    if record.entitlement_applied_at is not None:
        logging.info("Payment %s already granted, skipping plan extension", record.id)
        return None
    if not record.plan:
        # Отметку не ставим: план можно указать позже через bind_owner
        logging.warning("Payment %s settled without a plan; grant deferred", record.id)
        return None

    user = await db.get(User, record.owner_id, populate_existing=True)
    if user is None:
        logging.warning(
            "Payment %s settled for unknown user %s; plan not extended",
            record.id,
            record.owner_id,
        )
        return None

    now = ledger_store.utcnow()
    try:
        result = await db.execute(
            update(PaymentRecord)
            .where(
                PaymentRecord.id == record.id,
                PaymentRecord.status == STATUS_SETTLED,
                PaymentRecord.owner_id == record.owner_id,
                PaymentRecord.entitlement_applied_at.is_(None),
            )
            .values(entitlement_applied_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            logging.info("Payment %s grant claimed concurrently, skipping", record.id)
            return None

        user.plan = record.plan or user.plan or FREE_PLAN
        user.plan_expiry = extended_expiry(user.plan_expiry, record.billing_period, now)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logging.exception("Failed to extend plan for payment %s", record.id)
        raise StoreError("failed to apply entitlement", cause=exc) from exc

    set_committed_value(record, "entitlement_applied_at", now)
    logging.info(
        "Plan %s granted to user %s until %s (payment %s)",
        user.plan,
        user.id,
        user.plan_expiry,
        record.id,
    )
    return user
