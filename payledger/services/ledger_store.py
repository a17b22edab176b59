"""Row-level access to the ``payments`` table.

Every write goes through here so that uniqueness failures of the table's
indexes come back as :class:`ConstraintViolation` instead of a driver error.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payledger.errors import ConstraintViolation, StoreError
from payledger.models.payment import PaymentRecord

# Имя индекса / колонки -> имя правила уникальности
_CONSTRAINT_MARKERS = (
    ("ux_payments_pending_bucket", "pending_bucket"),
    ("created_at_bucket", "pending_bucket"),
    ("gateway_order_id", "gateway_order_id"),
    ("gateway_capture_id", "gateway_capture_id"),
    ("client_correlation_token", "client_correlation_token"),
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def minute_bucket(moment: datetime) -> datetime:
    return as_naive_utc(moment).replace(second=0, microsecond=0)


def violated_constraint(exc: IntegrityError) -> str:
    """Name the uniqueness rule behind ``exc`` (SQLite message or PG constraint name)."""
    orig = getattr(exc, "orig", None)
    diag = getattr(orig, "diag", None)
    text = " ".join(
        part for part in (getattr(diag, "constraint_name", None), str(orig)) if part
    )
    for marker, name in _CONSTRAINT_MARKERS:
        if marker in text:
            return name
    return "unknown"


async def insert_payment(db: AsyncSession, record: PaymentRecord) -> PaymentRecord:
    now = utcnow()
    if record.created_at is None:
        record.created_at = now
    record.created_at_bucket = minute_bucket(record.created_at)
    record.updated_at = now

    db.add(record)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConstraintViolation(violated_constraint(exc), cause=exc) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logging.exception("Insert into payments failed")
        raise StoreError("failed to insert payment", cause=exc) from exc
    return record


async def get_payment(db: AsyncSession, payment_id: int):
    try:
        return await db.get(PaymentRecord, payment_id, populate_existing=True)
    except SQLAlchemyError as exc:
        raise StoreError("failed to load payment", cause=exc) from exc


async def find_one(db: AsyncSession, *criteria, order_by=None):
    """Return the newest row matching ``criteria`` or ``None``."""
    stmt = (
        select(PaymentRecord)
        .where(*criteria)
        .order_by(order_by if order_by is not None else PaymentRecord.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    try:
        result = await db.execute(stmt)
    except SQLAlchemyError as exc:
        raise StoreError("payments lookup failed", cause=exc) from exc
    return result.scalars().first()


async def find_all(db: AsyncSession, *criteria, limit=None):
    stmt = (
        select(PaymentRecord)
        .where(*criteria)
        .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
        .execution_options(populate_existing=True)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    try:
        result = await db.execute(stmt)
    except SQLAlchemyError as exc:
        raise StoreError("payments lookup failed", cause=exc) from exc
    return list(result.scalars().all())


async def update_payment(db: AsyncSession, payment_id: int, *guards, **patch) -> int:
    """Apply ``patch`` to one row, only where every guard holds.

    Returns the number of rows changed (0 or 1), which lets callers use the
    update as a compare-and-set.
    """
    patch["updated_at"] = utcnow()
    stmt = (
        update(PaymentRecord)
        .where(PaymentRecord.id == payment_id, *guards)
        .values(**patch)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConstraintViolation(violated_constraint(exc), cause=exc) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logging.exception("Update of payment %s failed", payment_id)
        raise StoreError("failed to update payment", cause=exc) from exc
    return result.rowcount


async def delete_payments(db: AsyncSession, *criteria) -> int:
    try:
        result = await db.execute(
            delete(PaymentRecord).where(*criteria).execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StoreError("failed to delete payments", cause=exc) from exc
    return result.rowcount
