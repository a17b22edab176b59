"""Find the single ledger row a partial payment signal refers to.

Strategies, tried in the order the caller asks for them:

1. ``token``     exact ``client_correlation_token``
2. ``gateway``   exact ``gateway_order_id`` / ``gateway_capture_id``
3. ``bucket``    same owner, plan, billing period and minute bucket, still pending
4. ``heuristic`` same minute bucket and amount, still pending, owner known,
                 no order attached yet; more than one candidate is ambiguous

A lookup never returns more than one row. :class:`Ambiguous` carries no
record and callers treat it exactly like :class:`NotFound`.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence, Union

from sqlalchemy.ext.asyncio import AsyncSession

from payledger.models.payment import BILLING_ONE_OFF, PENDING_STATUSES, PaymentRecord
from payledger.services import ledger_store

TOKEN = "token"
GATEWAY = "gateway"
BUCKET = "bucket"
HEURISTIC = "heuristic"


@dataclass(frozen=True)
class Matched:
    record: PaymentRecord
    strategy: str


@dataclass(frozen=True)
class Ambiguous:
    strategy: str
    candidates: int


@dataclass(frozen=True)
class NotFound:
    pass


Resolution = Union[Matched, Ambiguous, NotFound]


@dataclass
class CorrelationQuery:
    token: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_capture_id: Optional[str] = None
    owner_id: Optional[int] = None
    plan: Optional[str] = None
    billing_period: Optional[str] = None
    bucket: Optional[datetime] = None
    amount: Optional[Decimal] = None


def _nullable_eq(column, value):
    return column.is_(None) if value is None else column == value


async def by_token(db: AsyncSession, query: CorrelationQuery) -> Resolution:
    if not query.token:
        return NotFound()
    record = await ledger_store.find_one(
        db, PaymentRecord.client_correlation_token == query.token
    )
    return Matched(record, TOKEN) if record else NotFound()


async def by_gateway_ids(db: AsyncSession, query: CorrelationQuery) -> Resolution:
    if query.gateway_order_id:
        record = await ledger_store.find_one(
            db, PaymentRecord.gateway_order_id == query.gateway_order_id
        )
        if record:
            return Matched(record, GATEWAY)
    if query.gateway_capture_id:
        record = await ledger_store.find_one(
            db, PaymentRecord.gateway_capture_id == query.gateway_capture_id
        )
        if record:
            return Matched(record, GATEWAY)
    return NotFound()


async def by_bucket(db: AsyncSession, query: CorrelationQuery) -> Resolution:
    if query.bucket is None or query.plan is None:
        return NotFound()
    record = await ledger_store.find_one(
        db,
        _nullable_eq(PaymentRecord.owner_id, query.owner_id),
        PaymentRecord.plan == query.plan,
        PaymentRecord.billing_period == (query.billing_period or BILLING_ONE_OFF),
        PaymentRecord.created_at_bucket == ledger_store.minute_bucket(query.bucket),
        PaymentRecord.status.in_(PENDING_STATUSES),
    )
    return Matched(record, BUCKET) if record else NotFound()


async def by_heuristic(db: AsyncSession, query: CorrelationQuery) -> Resolution:
    if query.bucket is None or query.amount is None:
        return NotFound()
    candidates = await ledger_store.find_all(
        db,
        PaymentRecord.created_at_bucket == ledger_store.minute_bucket(query.bucket),
        PaymentRecord.amount == query.amount,
        PaymentRecord.status.in_(PENDING_STATUSES),
        PaymentRecord.owner_id.is_not(None),
        PaymentRecord.gateway_order_id.is_(None),
        limit=2,
    )
    if len(candidates) == 1:
        return Matched(candidates[0], HEURISTIC)
    if candidates:
        logging.warning(
            "Heuristic correlation ambiguous: bucket=%s amount=%s",
            query.bucket,
            query.amount,
        )
        return Ambiguous(HEURISTIC, len(candidates))
    return NotFound()


_STRATEGIES = {
    TOKEN: by_token,
    GATEWAY: by_gateway_ids,
    BUCKET: by_bucket,
    HEURISTIC: by_heuristic,
}


async def resolve(
    db: AsyncSession, query: CorrelationQuery, strategies: Sequence[str]
) -> Resolution:
    """Run ``strategies`` in order and stop at the first hit.

    An ambiguous heuristic result is returned as is so the caller can log
    it, but it is never a hit.
    """
    result: Resolution = NotFound()
    for name in strategies:
        outcome = await _STRATEGIES[name](db, query)
        if isinstance(outcome, Matched):
            return outcome
        if isinstance(outcome, Ambiguous):
            result = outcome
    return result


def matched_record(outcome: Resolution) -> Optional[PaymentRecord]:
    return outcome.record if isinstance(outcome, Matched) else None
