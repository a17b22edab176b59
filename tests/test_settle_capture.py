import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from payledger.errors import NotFoundError, ValidationError
from payledger.gateway.base import PayerInfo
from payledger.models.user import User
from payledger.services import entitlement_service, ledger_store, lifecycle_service

from conftest import add_user, all_payments, count_payments, get_user


def minute_moment():
    return ledger_store.utcnow().replace(second=7, microsecond=0)


async def _attached(db, owner_id=42, plan="Pro", amount="12.99", order_id="ORDER-1", token=None):
    record = await lifecycle_service.provisional_create(
        db, owner_id, plan, "monthly", amount, token=token
    )
    return await lifecycle_service.attach_order(db, owner_id, record.id, order_id)


def test_checkout_round_trip_grants_plan(session_factory):
    add_user(session_factory, 42)
    before = ledger_store.utcnow()

    async def run():
        async with session_factory() as db:
            record = await _attached(db, token="temp-abc123")
            result = await lifecycle_service.settle_capture(
                db,
                "ORDER-1",
                "CAP-1",
                "settled",
                Decimal("12.99"),
                "USD",
                payer=PayerInfo(email="buyer@example.com", name="John Doe"),
            )
            access = await entitlement_service.compute_entitlement(db, 42)
            return record, result, access

    record, result, access = asyncio.run(run())
    after = ledger_store.utcnow()

    assert result.record.id == record.id
    assert result.transitioned is True
    assert result.granted is True
    assert result.record.status == "settled"
    assert result.record.gateway_capture_id == "CAP-1"
    assert result.record.payer_email == "buyer@example.com"
    assert result.record.entitlement_applied_at is not None

    assert access.allowed is True
    assert access.plan == "Pro"
    assert access.has_successful_payment is True
    assert before + timedelta(days=30) <= access.plan_expiry <= after + timedelta(days=30)


def test_redelivered_capture_changes_nothing(session_factory):
    add_user(session_factory, 42)

    async def run():
        async with session_factory() as db:
            await _attached(db)
            first = await lifecycle_service.settle_capture(
                db, "ORDER-1", "CAP-1", "settled", "12.99", "USD"
            )
            expiry = (await db.get(User, 42, populate_existing=True)).plan_expiry
            second = await lifecycle_service.settle_capture(
                db, "ORDER-1", "CAP-1", "settled", "12.99", "USD"
            )
            return first, second, expiry

    first, second, expiry = asyncio.run(run())
    assert first.granted is True
    assert second.transitioned is False
    assert second.granted is False
    assert second.record.id == first.record.id
    assert get_user(session_factory, 42).plan_expiry == expiry
    assert count_payments(session_factory) == 1


def test_capture_for_unknown_order_records_ownerless_row(session_factory):
    async def run():
        async with session_factory() as db:
            first = await lifecycle_service.settle_capture(
                db, "ORDER-X", "CAP-X", "settled", "12.99", "USD"
            )
            second = await lifecycle_service.settle_capture(
                db, "ORDER-X", "CAP-X", "settled", "12.99", "USD"
            )
            return first, second

    first, second = asyncio.run(run())
    assert first.record.owner_id is None
    assert first.record.status == "settled"
    assert first.transitioned is True
    assert first.granted is False
    assert second.record.id == first.record.id
    assert second.transitioned is False
    assert count_payments(session_factory) == 1


def test_capture_correlated_by_time_and_amount(session_factory):
    moment = minute_moment()

    async def run():
        async with session_factory() as db:
            pending = await lifecycle_service.provisional_create(
                db, 7, "Tutor", "monthly", "24.99", requested_created_at=moment
            )
            result = await lifecycle_service.settle_capture(
                db,
                "ORDER-Z",
                "CAP-Z",
                "settled",
                "24.99",
                "USD",
                captured_at=moment + timedelta(seconds=5),
            )
            return pending, result

    pending, result = asyncio.run(run())
    assert result.record.id == pending.id
    assert result.record.owner_id == 7
    assert result.record.gateway_order_id == "ORDER-Z"
    assert result.record.status == "settled"


def test_ambiguous_correlation_leaves_candidates_alone(session_factory):
    moment = minute_moment()

    async def run():
        async with session_factory() as db:
            await lifecycle_service.provisional_create(
                db, 1, "Pro", "monthly", "12.99", requested_created_at=moment
            )
            await lifecycle_service.provisional_create(
                db, 2, "Pro", "monthly", "12.99", requested_created_at=moment
            )
            return await lifecycle_service.settle_capture(
                db, "ORDER-A", "CAP-A", "settled", "12.99", "USD", captured_at=moment
            )

    result = asyncio.run(run())
    assert result.record.owner_id is None
    statuses = {(p.owner_id, p.status) for p in all_payments(session_factory)}
    assert statuses == {(1, "pending"), (2, "pending"), (None, "settled")}


def test_final_status_never_regresses(session_factory):
    async def run():
        async with session_factory() as db:
            await _attached(db, order_id="ORDER-D")
            denied = await lifecycle_service.settle_capture(
                db, "ORDER-D", "CAP-D", "denied", "12.99", "USD"
            )
            late = await lifecycle_service.settle_capture(
                db, "ORDER-D", "CAP-D", "settled", "12.99", "USD"
            )
            return denied, late

    denied, late = asyncio.run(run())
    assert denied.transitioned is True
    assert late.transitioned is False
    assert late.record.status == "denied"
    assert late.granted is False


def test_pending_capture_marks_row_attached(session_factory):
    async def run():
        async with session_factory() as db:
            await _attached(db)
            attached = await lifecycle_service.settle_capture(
                db, "ORDER-1", None, "attached", "12.99", "USD"
            )
            stale = await lifecycle_service.settle_capture(
                db, "ORDER-1", None, "pending", "12.99", "USD"
            )
            return attached, stale

    attached, stale = asyncio.run(run())
    assert attached.transitioned is True
    assert attached.record.status == "attached"
    assert stale.transitioned is False
    assert stale.record.status == "attached"


def test_capture_for_other_owner_is_not_found(session_factory):
    async def run():
        async with session_factory() as db:
            await _attached(db, owner_id=1)
            await lifecycle_service.settle_capture(
                db, "ORDER-1", "CAP-1", "settled", "12.99", "USD", owner_id=2
            )

    with pytest.raises(NotFoundError):
        asyncio.run(run())


def test_synchronous_capture_binds_ownerless_row_once(session_factory):
    add_user(session_factory, 42, plan="Pro")

    async def run():
        async with session_factory() as db:
            webhook = await lifecycle_service.settle_capture(
                db, "ORDER-W", "CAP-W", "settled", "12.99", "USD"
            )
            sync = await lifecycle_service.settle_capture(
                db, "ORDER-W", "CAP-W", "settled", "12.99", "USD", owner_id=42
            )
            repeat = await lifecycle_service.settle_capture(
                db, "ORDER-W", "CAP-W", "settled", "12.99", "USD", owner_id=42
            )
            return webhook, sync, repeat

    webhook, sync, repeat = asyncio.run(run())
    assert sync.record.id == webhook.record.id
    assert sync.record.owner_id == 42
    assert repeat.record.owner_id == 42
    assert count_payments(session_factory) == 1


def test_grant_without_plan_is_deferred_until_bind(session_factory):
    add_user(session_factory, 42)

    async def run():
        async with session_factory() as db:
            owned = await lifecycle_service.settle_capture(
                db, "ORDER-N", "CAP-N", "settled", "12.99", "USD", owner_id=42
            )
            bound = await lifecycle_service.bind_owner(
                db, owned.record.id, 42, plan="Pro", billing_period="monthly"
            )
            return owned, bound

    owned, bound = asyncio.run(run())
    assert owned.record.plan is None
    assert owned.granted is False
    assert owned.record.entitlement_applied_at is None

    assert bound.granted is True
    assert bound.record.billing_period == "monthly"
    user = get_user(session_factory, 42)
    assert user.plan == "Pro"
    assert user.plan_expiry > ledger_store.utcnow() + timedelta(days=29)


def test_synchronous_capture_uses_owners_open_row(session_factory):
    add_user(session_factory, 42)

    async def run():
        async with session_factory() as db:
            pending = await lifecycle_service.provisional_create(
                db, 42, "Tutor", "monthly", "24.99"
            )
            result = await lifecycle_service.settle_capture(
                db, "ORDER-C", "CAP-C", "settled", "24.99", "USD", owner_id=42
            )
            return pending, result

    pending, result = asyncio.run(run())
    assert result.record.id == pending.id
    assert result.record.gateway_order_id == "ORDER-C"
    assert result.granted is True
    assert get_user(session_factory, 42).plan == "Tutor"
    assert count_payments(session_factory) == 1


def test_bind_owner_applies_grant(session_factory):
    add_user(session_factory, 42)

    async def run():
        async with session_factory() as db:
            anonymous = await lifecycle_service.settle_capture(
                db, "ORDER-B", "CAP-B", "settled", "24.99", "USD"
            )
            return await lifecycle_service.bind_owner(
                db, anonymous.record.id, 42, plan="Tutor", billing_period="monthly"
            )

    result = asyncio.run(run())
    assert result.record.owner_id == 42
    assert result.granted is True
    user = get_user(session_factory, 42)
    assert user.plan == "Tutor"
    assert user.plan_expiry > ledger_store.utcnow() + timedelta(days=29)


@pytest.mark.parametrize(
    "args",
    [
        (None, None, "settled", "12.99", "USD"),
        ("ORDER-1", None, "bogus", "12.99", "USD"),
        ("ORDER-1", None, "settled", "abc", "USD"),
    ],
)
def test_settle_rejects_invalid_input(session_factory, args):
    async def run():
        async with session_factory() as db:
            await lifecycle_service.settle_capture(db, *args)

    with pytest.raises(ValidationError):
        asyncio.run(run())
