"""State-advancing operations on ledger rows.

``provisional_create``, ``attach_order`` and ``settle_capture`` may all run
concurrently for the same real payment (retries, second tab, webhook
redelivery). None of them takes a lock: the unique indexes of the payments
table decide races, and every write is either an insert that may lose with a
:class:`ConstraintViolation` (the loser re-reads the winner) or a guarded
update whose row count says whether this call performed the transition.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession

from payledger import config
from payledger.errors import (
    ConflictError,
    ConstraintViolation,
    NotFoundError,
    StoreError,
    ValidationError,
)
from payledger.gateway.base import PayerInfo
from payledger.models.payment import (
    ALL_STATUSES,
    BILLING_ONE_OFF,
    PENDING_STATUSES,
    STATUS_PENDING,
    STATUS_RANK,
    STATUS_SETTLED,
    TERMINAL_STATUSES,
    PaymentRecord,
)
from payledger.models.user import FREE_PLAN, User
from payledger.services import correlation, entitlement_service, ledger_store
from payledger.services.correlation import CorrelationQuery
from telegram_bot.notify import notify_plan_granted

REASONS = ("regular", "change_plan", "past_due", "next_due")

# Повторные попытки compare-and-set при гонке с другим писателем
_MAX_CAS_ATTEMPTS = 3


@dataclass
class PaymentMetadata:
    """The only metadata the ledger reads back."""

    reason: Optional[str] = None
    change_to: Optional[str] = None
    correlation_token: Optional[str] = None


@dataclass
class SettlementResult:
    record: PaymentRecord
    transitioned: bool
    granted: bool = False


# ---------- validation ----------

def validate_owner(owner_id) -> int:
    try:
        value = int(owner_id)
    except (TypeError, ValueError):
        raise ValidationError("Invalid or missing owner id") from None
    if value <= 0:
        raise ValidationError("Invalid or missing owner id")
    return value


def validate_amount(amount, *, allow_zero=False) -> Decimal:
    if amount is None or str(amount).strip() == "":
        raise ValidationError("amount is required")
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValidationError(f"invalid amount: {amount!r}") from None
    if not value.is_finite() or value < 0 or (value == 0 and not allow_zero):
        raise ValidationError(f"invalid amount: {amount!r}")
    return value.quantize(Decimal("0.01"))


def validate_identifier(value, what) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError(f"{what} is required")
    if len(text) > 128:
        raise ValidationError(f"{what} is too long")
    return text


def _clean_token(token) -> Optional[str]:
    if token is None or str(token).strip() == "":
        return None
    return validate_identifier(token, "client correlation token")


def effective_created_at(requested: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """Server timestamp, or the client's one when it is within the allowed skew."""
    now = now or ledger_store.utcnow()
    if requested is None:
        return now
    requested = ledger_store.as_naive_utc(requested)
    if abs(requested - now) > timedelta(seconds=config.CLIENT_CLOCK_SKEW_SECONDS):
        logging.info("Client createdAt %s too far from server time, using %s", requested, now)
        return now
    return requested


async def _derive_metadata(
    db: AsyncSession, owner_id: int, plan: str, reason: Optional[str]
) -> PaymentMetadata:
    if reason in REASONS:
        return PaymentMetadata(reason=reason, change_to=plan if reason == "change_plan" else None)
    user = await db.get(User, owner_id)
    current = user.plan if user else None
    if current and current.lower() not in (plan.lower(), FREE_PLAN.lower()):
        return PaymentMetadata(reason="change_plan", change_to=plan)
    return PaymentMetadata(reason="regular")


def _check_owner(record: PaymentRecord, owner_id: Optional[int]) -> None:
    if owner_id is not None and record.owner_id is not None and record.owner_id != owner_id:
        raise NotFoundError("Payment not found for user")


# ---------- provisional create ----------

async def provisional_create(
    db: AsyncSession,
    owner_id,
    plan: str,
    billing_period: Optional[str] = "monthly",
    amount=None,
    token: Optional[str] = None,
    requested_created_at: Optional[datetime] = None,
    reason: Optional[str] = None,
    currency: Optional[str] = None,
) -> PaymentRecord:
    """Create the pending row for a payment the user is about to make.

    Retries and double submits for the same owner, plan, billing period and
    minute return the row that already exists instead of adding a second one.
    """
    owner_id = validate_owner(owner_id)
    plan = validate_identifier(plan, "plan")
    billing_period = (billing_period or "").strip() or BILLING_ONE_OFF
    token = _clean_token(token)
    if amount is None or str(amount).strip() == "":
        amount = config.plan_price(plan, billing_period)
    amount = validate_amount(amount)
    currency = (currency or config.DEFAULT_CURRENCY).upper()
    created_at = effective_created_at(requested_created_at)

    query = CorrelationQuery(
        token=token,
        owner_id=owner_id,
        plan=plan,
        billing_period=billing_period,
        bucket=created_at,
    )
    existing = correlation.matched_record(
        await correlation.resolve(db, query, (correlation.TOKEN, correlation.BUCKET))
    )
    if existing:
        _check_token_owner(existing, owner_id)
        logging.info("provisional_create: reusing payment %s for user %s", existing.id, owner_id)
        return existing

    metadata = await _derive_metadata(db, owner_id, plan, reason)
    record = PaymentRecord(
        owner_id=owner_id,
        plan=plan,
        billing_period=billing_period,
        amount=amount,
        currency=currency,
        status=STATUS_PENDING,
        client_correlation_token=token,
        reason=metadata.reason,
        change_to=metadata.change_to,
        created_at=created_at,
    )
    try:
        record = await ledger_store.insert_payment(db, record)
    except ConstraintViolation as exc:
        if exc.constraint not in ("pending_bucket", "client_correlation_token"):
            raise
        # Проиграли гонку параллельному запросу: возвращаем победителя
        winner = correlation.matched_record(
            await correlation.resolve(db, query, (correlation.TOKEN, correlation.BUCKET))
        )
        if winner is None:
            raise StoreError("pending payment vanished after unique violation", cause=exc) from exc
        _check_token_owner(winner, owner_id)
        logging.info(
            "provisional_create: lost race on %s, returning payment %s", exc.constraint, winner.id
        )
        return winner

    logging.info(
        "provisional_create: payment %s created for user %s (%s %s)",
        record.id,
        owner_id,
        plan,
        billing_period,
    )
    return record


def _check_token_owner(record: PaymentRecord, owner_id: int) -> None:
    if record.owner_id is not None and record.owner_id != owner_id:
        raise ConflictError("client correlation token already used by another payment")


# ---------- attach order ----------

def _metadata_patch(record: PaymentRecord, metadata: Optional[PaymentMetadata]) -> dict:
    if metadata is None:
        return {}
    patch = {}
    if metadata.reason in REASONS and metadata.reason != record.reason:
        patch["reason"] = metadata.reason
    if metadata.change_to and metadata.change_to != record.change_to:
        patch["change_to"] = metadata.change_to
    token = _clean_token(metadata.correlation_token)
    if token and record.client_correlation_token is None:
        patch["client_correlation_token"] = token
    return patch


async def _retire_provisional(db: AsyncSession, record: PaymentRecord) -> int:
    return await ledger_store.delete_payments(
        db,
        PaymentRecord.id == record.id,
        PaymentRecord.owner_id == record.owner_id,
        PaymentRecord.status.in_(PENDING_STATUSES),
    )


async def _adopt_ownerless(
    db: AsyncSession,
    record: PaymentRecord,
    holder: PaymentRecord,
    metadata: Optional[PaymentMetadata] = None,
) -> PaymentRecord:
    """Take over the ownerless row a webhook created for the caller's order.

    The caller's provisional row is removed so the payment keeps a single
    row; the owner, plan, billing period and reason move to ``holder``.
    """
    if record.is_terminal:
        raise ConflictError(
            f"payment {record.id} is final and bound to order {record.gateway_order_id}"
        )
    owner_id = record.owner_id
    order_id = holder.gateway_order_id

    patch = _metadata_patch(holder, metadata)
    token = patch.pop("client_correlation_token", None) or record.client_correlation_token
    patch["owner_id"] = owner_id
    if holder.plan is None and record.plan:
        patch["plan"] = record.plan
    if holder.billing_period in (None, BILLING_ONE_OFF) and record.billing_period:
        patch["billing_period"] = record.billing_period
    if "reason" not in patch and holder.reason is None and record.reason:
        patch["reason"] = record.reason
        patch["change_to"] = record.change_to

    dropped = None
    try:
        changed = await ledger_store.update_payment(
            db, holder.id, PaymentRecord.owner_id.is_(None), **patch
        )
    except ConstraintViolation as exc:
        if exc.constraint != "pending_bucket":
            raise
        # Занятое окно освобождает сама предварительная строка
        dropped = await _retire_provisional(db, record)
        changed = await ledger_store.update_payment(
            db, holder.id, PaymentRecord.owner_id.is_(None), **patch
        )

    holder = await ledger_store.get_payment(db, holder.id)
    if not changed and holder.owner_id != owner_id:
        raise ConflictError(f"order {order_id} is already attached to another payment")
    if dropped is None:
        dropped = await _retire_provisional(db, record)
    if dropped and token and holder.client_correlation_token is None:
        await ledger_store.update_payment(
            db,
            holder.id,
            PaymentRecord.client_correlation_token.is_(None),
            client_correlation_token=token,
        )
        holder = await ledger_store.get_payment(db, holder.id)
    logging.info(
        "attach_order: user %s adopted payment %s for order %s, dropped payment %s",
        owner_id,
        holder.id,
        order_id,
        record.id,
    )

    if holder.status == STATUS_SETTLED:
        user = await entitlement_service.apply_settlement(db, holder)
        if user is not None:
            await notify_plan_granted(user, holder)
    return holder


async def _bind_order(
    db: AsyncSession,
    record: PaymentRecord,
    order_id: str,
    metadata: Optional[PaymentMetadata] = None,
) -> PaymentRecord:
    for _ in range(_MAX_CAS_ATTEMPTS):
        patch = _metadata_patch(record, metadata)
        previous = record.gateway_order_id

        if previous != order_id:
            holder = await ledger_store.find_one(db, PaymentRecord.gateway_order_id == order_id)
            if holder is not None and holder.id != record.id:
                if holder.owner_id is None and record.owner_id is not None:
                    return await _adopt_ownerless(db, record, holder, metadata)
                raise ConflictError(f"order {order_id} is already attached to another payment")
            if previous is not None:
                if record.is_terminal:
                    raise ConflictError(
                        f"payment {record.id} is final and bound to order {previous}"
                    )
                logging.warning(
                    "attach_order: payment %s moves from order %s to %s",
                    record.id,
                    previous,
                    order_id,
                )
            patch["gateway_order_id"] = order_id

        if not patch:
            return record

        guard = (
            PaymentRecord.gateway_order_id.is_(None)
            if previous is None
            else PaymentRecord.gateway_order_id == previous
        )
        try:
            changed = await ledger_store.update_payment(db, record.id, guard, **patch)
        except ConstraintViolation as exc:
            if exc.constraint == "gateway_order_id":
                # Строку с этим заказом только что вставил вебхук: перечитываем
                logging.info("attach_order: order %s recorded concurrently, retrying", order_id)
                continue
            if exc.constraint == "client_correlation_token":
                raise ConflictError(
                    "client correlation token already used by another payment", cause=exc
                ) from exc
            raise

        record = await ledger_store.get_payment(db, record.id)
        if changed:
            logging.info("attach_order: payment %s bound to order %s", record.id, order_id)
            return record
    raise ConflictError(f"payment {record.id} changed concurrently while attaching {order_id}")


async def attach_order(
    db: AsyncSession,
    owner_id,
    payment_id,
    order_id: str,
    metadata: Optional[PaymentMetadata] = None,
) -> PaymentRecord:
    """Record the gateway order id on the caller's row. Status is left as is."""
    owner_id = validate_owner(owner_id)
    try:
        payment_id = int(payment_id)
    except (TypeError, ValueError):
        raise ValidationError("Invalid paymentId") from None
    order_id = validate_identifier(order_id, "order id")

    record = await ledger_store.get_payment(db, payment_id)
    if record is None or record.owner_id != owner_id:
        raise NotFoundError("Payment not found")
    return await _bind_order(db, record, order_id, metadata)


async def attach_order_public(
    db: AsyncSession,
    order_id: str,
    token: Optional[str] = None,
    requested_created_at: Optional[datetime] = None,
    amount=None,
    plan: Optional[str] = None,
    currency: Optional[str] = None,
) -> PaymentRecord:
    """Unauthenticated fallback: correlate by token or time and amount.

    When nothing matches, an ownerless pending row holding the order id is
    created so the later webhook has something to settle.
    """
    order_id = validate_identifier(order_id, "order id")
    token = _clean_token(token)
    parsed_amount = validate_amount(amount) if amount is not None else None

    existing = await ledger_store.find_one(db, PaymentRecord.gateway_order_id == order_id)
    if existing is not None:
        return existing

    created_at = effective_created_at(requested_created_at)
    query = CorrelationQuery(token=token, bucket=created_at, amount=parsed_amount)
    outcome = await correlation.resolve(db, query, (correlation.TOKEN, correlation.HEURISTIC))
    if isinstance(outcome, correlation.Matched):
        return await _bind_order(db, outcome.record, order_id)

    if parsed_amount is None:
        raise ValidationError("amount is required when the payment cannot be correlated")
    record = PaymentRecord(
        owner_id=None,
        plan=(plan or "").strip() or None,
        billing_period=BILLING_ONE_OFF,
        amount=parsed_amount,
        currency=(currency or config.DEFAULT_CURRENCY).upper(),
        status=STATUS_PENDING,
        gateway_order_id=order_id,
        client_correlation_token=token,
        created_at=created_at,
    )
    try:
        record = await ledger_store.insert_payment(db, record)
    except ConstraintViolation as exc:
        if exc.constraint == "gateway_order_id":
            winner = await ledger_store.find_one(db, PaymentRecord.gateway_order_id == order_id)
            if winner is not None:
                return winner
        raise ConflictError("could not record public order attachment", cause=exc) from exc
    logging.info("attach_order_public: anonymous payment %s created for order %s", record.id, order_id)
    return record


# ---------- settle capture ----------

def _payer_patch(record: PaymentRecord, payer: Optional[PayerInfo]) -> dict:
    patch = {}
    if payer is not None:
        if payer.email and payer.email != record.payer_email:
            patch["payer_email"] = payer.email
        if payer.name and payer.name != record.payer_name:
            patch["payer_name"] = payer.name
    return patch


def _serialize_payload(payload) -> Optional[str]:
    if payload is None:
        return None
    try:
        return json.dumps(payload, default=str)
    except (TypeError, ValueError):
        return None


async def _open_row_for(
    db: AsyncSession, reference: Optional[str], owner_id: Optional[int], amount: Decimal
) -> Optional[PaymentRecord]:
    """Open row without an order: the one named by ``reference``, else the owner's own."""
    open_rows = (
        PaymentRecord.status.in_(PENDING_STATUSES),
        PaymentRecord.gateway_order_id.is_(None),
    )
    if reference and str(reference).isdigit():
        record = await ledger_store.find_one(db, PaymentRecord.id == int(reference), *open_rows)
        if record is not None and (owner_id is None or record.owner_id in (None, owner_id)):
            return record
    if owner_id is None:
        return None
    return await ledger_store.find_one(
        db, PaymentRecord.owner_id == owner_id, PaymentRecord.amount == amount, *open_rows
    )


async def _locate_for_settlement(
    db: AsyncSession,
    order_id: Optional[str],
    capture_id: Optional[str],
    amount: Decimal,
    captured_at: Optional[datetime],
    owner_id: Optional[int],
    reference: Optional[str] = None,
) -> Optional[PaymentRecord]:
    query = CorrelationQuery(
        gateway_order_id=order_id,
        gateway_capture_id=capture_id,
        bucket=captured_at,
        amount=amount,
    )
    outcome = await correlation.resolve(db, query, (correlation.GATEWAY,))
    if isinstance(outcome, correlation.Matched):
        return outcome.record

    record = await _open_row_for(db, reference, owner_id, amount)
    if record is not None:
        logging.info("settle_capture: order %s matched open payment %s", order_id, record.id)
        return record
    if owner_id is not None:
        return None

    # Эвристика только для анонимных уведомлений шлюза
    outcome = await correlation.resolve(db, query, (correlation.HEURISTIC,))
    if isinstance(outcome, correlation.Ambiguous):
        logging.warning(
            "settle_capture: order %s matches %s candidates heuristically; left unresolved",
            order_id,
            outcome.candidates,
        )
    return correlation.matched_record(outcome)


async def _insert_anonymous(
    db: AsyncSession,
    order_id,
    capture_id,
    final_status,
    amount,
    currency,
    payer,
    owner_id,
    payload,
) -> Optional[PaymentRecord]:
    record = PaymentRecord(
        owner_id=owner_id,
        amount=amount,
        currency=currency,
        gateway_order_id=order_id,
        gateway_capture_id=capture_id,
        status=final_status,
        payer_email=payer.email if payer else None,
        payer_name=payer.name if payer else None,
        gateway_payload=payload,
    )
    try:
        record = await ledger_store.insert_payment(db, record)
    except ConstraintViolation as exc:
        if exc.constraint not in ("gateway_order_id", "gateway_capture_id"):
            raise
        logging.info("settle_capture: concurrent writer created order %s first", order_id)
        return None
    logging.warning(
        "settle_capture: no payment matched order %s; recorded payment %s (owner=%s)",
        order_id,
        record.id,
        owner_id,
    )
    return record


async def settle_capture(
    db: AsyncSession,
    order_id: Optional[str],
    capture_id: Optional[str],
    final_status: str,
    amount,
    currency: str,
    payer: Optional[PayerInfo] = None,
    owner_id=None,
    captured_at: Optional[datetime] = None,
    gateway_payload=None,
    reference: Optional[str] = None,
) -> SettlementResult:
    """Apply the gateway's authoritative state to the matching row.

    The row is found by order id, then capture id, then the open row named by
    ``reference`` or owned by ``owner_id``, then (for anonymous signals) the
    time and amount heuristic; when none exists an ownerless row is inserted so the payment is
    never dropped. Status only moves forward, and a row that is already final
    is left alone apart from binding a still unknown owner. The owner's plan
    is extended at most once per row.
    """
    order_id = validate_identifier(order_id, "order id") if order_id else None
    capture_id = validate_identifier(capture_id, "capture id") if capture_id else None
    if not order_id and not capture_id:
        raise ValidationError("order id or capture id is required")
    if final_status not in ALL_STATUSES:
        raise ValidationError(f"unknown payment status {final_status!r}")
    amount = validate_amount(amount, allow_zero=True)
    currency = validate_identifier(currency, "currency").upper()
    owner_id = validate_owner(owner_id) if owner_id is not None else None
    payload = _serialize_payload(gateway_payload)

    transitioned = False
    record = None
    for _ in range(_MAX_CAS_ATTEMPTS):
        record = await _locate_for_settlement(
            db, order_id, capture_id, amount, captured_at, owner_id, reference
        )
        if record is None:
            record = await _insert_anonymous(
                db, order_id, capture_id, final_status, amount, currency, payer, owner_id, payload
            )
            if record is None:
                continue
            transitioned = True
            break

        _check_owner(record, owner_id)
        current = record.status
        patch = {}
        if owner_id is not None and record.owner_id is None:
            patch["owner_id"] = owner_id
        if order_id and record.gateway_order_id is None:
            patch["gateway_order_id"] = order_id

        moves_forward = current not in TERMINAL_STATUSES and (
            STATUS_RANK[final_status] > STATUS_RANK[current]
        )
        if moves_forward:
            patch["status"] = final_status
            patch["amount"] = amount
            patch["currency"] = currency
            patch.update(_payer_patch(record, payer))
            if payload is not None:
                patch["gateway_payload"] = payload
        elif current in TERMINAL_STATUSES:
            logging.info(
                "settle_capture: payment %s already %s, ignoring reported %s",
                record.id,
                current,
                final_status,
            )
        if capture_id and record.gateway_capture_id is None and (
            moves_forward or current in TERMINAL_STATUSES
        ):
            patch["gateway_capture_id"] = capture_id
        elif capture_id and record.gateway_capture_id not in (None, capture_id):
            logging.warning(
                "settle_capture: payment %s keeps capture %s, reported %s",
                record.id,
                record.gateway_capture_id,
                capture_id,
            )

        if not patch:
            break

        guards = [PaymentRecord.status == current]
        if "owner_id" in patch:
            guards.append(PaymentRecord.owner_id.is_(None))
        if "gateway_order_id" in patch:
            guards.append(PaymentRecord.gateway_order_id.is_(None))
        try:
            changed = await ledger_store.update_payment(db, record.id, *guards, **patch)
        except ConstraintViolation as exc:
            if exc.constraint in ("gateway_order_id", "gateway_capture_id"):
                raise ConflictError(
                    f"{exc.constraint} already bound to another payment", cause=exc
                ) from exc
            raise
        if changed:
            transitioned = moves_forward
            record = await ledger_store.get_payment(db, record.id)
            break
        logging.info("settle_capture: payment %s changed concurrently, retrying", record.id)
    else:
        raise ConflictError("payment changed concurrently during settlement")

    if transitioned:
        logging.info(
            "settle_capture: payment %s is now %s (order=%s capture=%s)",
            record.id,
            record.status,
            record.gateway_order_id,
            record.gateway_capture_id,
        )

    granted = False
    if record.status == STATUS_SETTLED and record.owner_id is not None:
        user = await entitlement_service.apply_settlement(db, record)
        if user is not None:
            granted = True
            await notify_plan_granted(user, record)
    return SettlementResult(record=record, transitioned=transitioned, granted=granted)


# ---------- owner binding for unresolved rows ----------

async def bind_owner(
    db: AsyncSession,
    payment_id,
    owner_id,
    plan: Optional[str] = None,
    billing_period: Optional[str] = None,
) -> SettlementResult:
    """Attach an owner to an anonymous row; an owner once set never changes."""
    owner_id = validate_owner(owner_id)
    record = await ledger_store.get_payment(db, int(payment_id))
    if record is None:
        raise NotFoundError("Payment not found")
    if record.owner_id is not None and record.owner_id != owner_id:
        raise ConflictError(f"payment {record.id} already belongs to another user")

    patch = {}
    if record.owner_id is None:
        patch["owner_id"] = owner_id
    if plan and record.plan is None:
        patch["plan"] = plan
    if billing_period and record.billing_period in (None, BILLING_ONE_OFF):
        patch["billing_period"] = billing_period
    if patch:
        changed = await ledger_store.update_payment(
            db,
            record.id,
            or_(PaymentRecord.owner_id.is_(None), PaymentRecord.owner_id == owner_id),
            **patch,
        )
        if not changed:
            raise ConflictError(f"payment {record.id} already belongs to another user")
        record = await ledger_store.get_payment(db, record.id)
        logging.info("bind_owner: payment %s bound to user %s", record.id, owner_id)

    granted = False
    if record.status == STATUS_SETTLED:
        user = await entitlement_service.apply_settlement(db, record)
        if user is not None:
            granted = True
            await notify_plan_granted(user, record)
    return SettlementResult(record=record, transitioned=False, granted=granted)
