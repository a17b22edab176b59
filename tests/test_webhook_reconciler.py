import asyncio

import pytest

from payledger.services import lifecycle_service, webhook_reconciler

from conftest import add_user, all_payments, capture_event, get_user


@pytest.fixture(autouse=True)
def ledger_db(session_factory, monkeypatch):
    monkeypatch.setattr(webhook_reconciler, "SessionLocal", session_factory)
    return session_factory


def test_webhook_before_any_client_call_records_ownerless_row(session_factory, gateway):
    gateway.add_order("ORDER-W", status="settled", capture_id="CAP-W")

    first = asyncio.run(
        webhook_reconciler.reconcile_notification(capture_event("CAP-W", "ORDER-W"), gateway)
    )
    again = asyncio.run(
        webhook_reconciler.reconcile_notification(capture_event("CAP-W", "ORDER-W"), gateway)
    )

    assert first.record.owner_id is None
    assert first.record.status == "settled"
    assert again.record.id == first.record.id
    assert again.transitioned is False
    assert len(all_payments(session_factory)) == 1


def test_webhook_settles_attached_row_and_grants(session_factory, gateway):
    add_user(session_factory, 42)
    gateway.add_order("ORDER-1", status="settled", capture_id="CAP-1")

    async def prepare():
        async with session_factory() as db:
            record = await lifecycle_service.provisional_create(db, 42, "Pro", "monthly", "12.99")
            return await lifecycle_service.attach_order(db, 42, record.id, "ORDER-1")

    record = asyncio.run(prepare())
    result = asyncio.run(
        webhook_reconciler.reconcile_notification(capture_event("CAP-1", "ORDER-1"), gateway)
    )

    assert result.record.id == record.id
    assert result.record.status == "settled"
    assert result.granted is True
    assert get_user(session_factory, 42).plan == "Pro"


def test_amount_comes_from_gateway_not_payload(session_factory, gateway):
    gateway.add_order("ORDER-2", status="settled", amount="24.99", capture_id="CAP-2")

    result = asyncio.run(
        webhook_reconciler.reconcile_notification(
            capture_event("CAP-2", "ORDER-2", amount="0.01"), gateway
        )
    )
    assert f"{result.record.amount:.2f}" == "24.99"


def test_capture_event_without_order_id_uses_known_capture(session_factory, gateway):
    gateway.add_order("ORDER-3", status="attached")

    async def prepare():
        async with session_factory() as db:
            await lifecycle_service.settle_capture(db, "ORDER-3", "CAP-3", "attached", "12.99", "USD")

    asyncio.run(prepare())
    order = gateway.orders["ORDER-3"]
    order.status = "settled"
    order.capture_id = "CAP-3"

    result = asyncio.run(webhook_reconciler.reconcile_notification(capture_event("CAP-3"), gateway))
    assert result is not None
    assert result.record.status == "settled"
    assert result.record.gateway_capture_id == "CAP-3"


def test_unknown_event_is_ignored(session_factory, gateway):
    payload = {"event_type": "BILLING.SUBSCRIPTION.CREATED", "resource": {"id": "I-1"}}
    assert asyncio.run(webhook_reconciler.reconcile_notification(payload, gateway)) is None
    assert all_payments(session_factory) == []


def test_gateway_failure_is_absorbed(session_factory, gateway):
    gateway.fail_get = True
    result = asyncio.run(
        webhook_reconciler.reconcile_notification(capture_event("CAP-9", "ORDER-9"), gateway)
    )
    assert result is None
    assert all_payments(session_factory) == []


def test_denied_capture_is_recorded(session_factory, gateway):
    gateway.add_order("ORDER-4", status="denied", capture_id="CAP-4")
    result = asyncio.run(
        webhook_reconciler.reconcile_notification(
            capture_event("CAP-4", "ORDER-4", event_type="PAYMENT.CAPTURE.DENIED"), gateway
        )
    )
    assert result.record.status == "denied"
    assert result.granted is False


def test_webhook_for_unattached_order_uses_gateway_reference(session_factory, gateway):
    add_user(session_factory, 42)

    async def prepare():
        async with session_factory() as db:
            return await lifecycle_service.provisional_create(db, 42, "Pro", "monthly", "12.99")

    pending = asyncio.run(prepare())
    gateway.add_order("ORDER-R", status="settled", capture_id="CAP-R", reference=str(pending.id))

    result = asyncio.run(
        webhook_reconciler.reconcile_notification(capture_event("CAP-R", "ORDER-R"), gateway)
    )
    assert result.record.id == pending.id
    assert result.record.gateway_order_id == "ORDER-R"
    assert result.granted is True
    assert len(all_payments(session_factory)) == 1


def test_attach_after_webhook_keeps_one_row(session_factory, gateway):
    add_user(session_factory, 42)
    gateway.add_order("ORDER-E", status="settled", capture_id="CAP-E")

    async def provisional():
        async with session_factory() as db:
            return await lifecycle_service.provisional_create(db, 42, "Pro", "monthly", "12.99")

    pending = asyncio.run(provisional())
    early = asyncio.run(
        webhook_reconciler.reconcile_notification(capture_event("CAP-E", "ORDER-E"), gateway)
    )

    async def attach():
        async with session_factory() as db:
            return await lifecycle_service.attach_order(db, 42, pending.id, "ORDER-E")

    adopted = asyncio.run(attach())
    assert early.record.owner_id is None
    assert adopted.id == early.record.id
    assert adopted.owner_id == 42
    assert get_user(session_factory, 42).plan == "Pro"
    assert len(all_payments(session_factory)) == 1
