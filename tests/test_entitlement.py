import asyncio
from datetime import datetime, timedelta

from payledger.services import entitlement_service, ledger_store, lifecycle_service

from conftest import add_user


def test_free_plan_is_allowed(session_factory):
    add_user(session_factory, 5)

    async def run():
        async with session_factory() as db:
            return await entitlement_service.compute_entitlement(db, 5)

    access = asyncio.run(run())
    assert access.allowed is True
    assert access.plan == "Free"
    assert access.active_subscription is False


def test_expired_paid_plan_reports_pending_amount(session_factory):
    add_user(session_factory, 5, plan="Pro", plan_expiry=ledger_store.utcnow() - timedelta(days=1))

    async def run():
        async with session_factory() as db:
            await lifecycle_service.provisional_create(db, 5, "Pro", "monthly", "12.99")
            return await entitlement_service.compute_entitlement(db, 5)

    access = asyncio.run(run())
    assert access.allowed is False
    assert access.pending_amount == "12.99 USD"
    body = access.as_dict()
    assert body["activeSubscription"] is False
    assert body["pendingAmount"] == "12.99 USD"


def test_active_paid_plan_is_allowed(session_factory):
    expiry = ledger_store.utcnow() + timedelta(days=3)
    add_user(session_factory, 5, plan="Pro", plan_expiry=expiry)

    async def run():
        async with session_factory() as db:
            return await entitlement_service.compute_entitlement(db, 5)

    access = asyncio.run(run())
    assert access.allowed is True
    assert access.active_subscription is True
    assert access.as_dict()["planExpiry"] == expiry.isoformat()


def test_unknown_user_with_settled_payment(session_factory):
    async def run():
        async with session_factory() as db:
            record = await lifecycle_service.provisional_create(db, 77, "Pro", "monthly", "12.99")
            await lifecycle_service.attach_order(db, 77, record.id, "ORDER-77")
            await lifecycle_service.settle_capture(db, "ORDER-77", "CAP-77", "settled", "12.99", "USD")
            return await entitlement_service.compute_entitlement(db, 77)

    access = asyncio.run(run())
    assert access.allowed is False
    assert access.reason == "user_not_found"
    assert access.has_successful_payment is True


def test_extended_expiry_stacks_on_future_expiry():
    now = datetime(2024, 5, 1, 12, 0)
    future = datetime(2024, 5, 10, 12, 0)
    assert entitlement_service.extended_expiry(future, "monthly", now) == datetime(2024, 6, 9, 12, 0)
    assert entitlement_service.extended_expiry(None, "yearly", now) == datetime(2025, 5, 1, 12, 0)
    past = datetime(2024, 1, 1)
    assert entitlement_service.extended_expiry(past, "Monthly", now) == datetime(2024, 5, 31, 12, 0)
    assert entitlement_service.extended_expiry(past, None, now) == past


def test_grant_not_applied_to_open_row(session_factory):
    add_user(session_factory, 5)

    async def run():
        async with session_factory() as db:
            record = await lifecycle_service.provisional_create(db, 5, "Pro", "monthly", "12.99")
            return await entitlement_service.apply_settlement(db, record)

    assert asyncio.run(run()) is None
