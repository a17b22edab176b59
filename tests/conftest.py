import asyncio
import sys
from copy import deepcopy
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

sys.path.append(str(Path(__file__).resolve().parents[1]))

from payledger.db.base_class import Base
from payledger.errors import UpstreamGatewayError
from payledger.gateway.base import GatewayOrder, PayerInfo
from payledger.gateway.paypal import PayPalGateway
from payledger.models.payment import STATUS_PENDING, STATUS_SETTLED, PaymentRecord
from payledger.models.user import User


def setup_test_db(db_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    TestingSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)

    async def init_models():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    return engine, TestingSessionLocal


@pytest.fixture
def session_factory(tmp_path):
    engine, TestingSessionLocal = setup_test_db(tmp_path / "ledger.db")
    yield TestingSessionLocal
    asyncio.run(engine.dispose())


def add_user(SessionLocal, user_id, plan="Free", plan_expiry=None, telegram_id=None):
    async def seed():
        async with SessionLocal() as db:
            db.add(User(id=user_id, plan=plan, plan_expiry=plan_expiry, telegram_id=telegram_id))
            await db.commit()

    asyncio.run(seed())


def get_user(SessionLocal, user_id):
    async def load():
        async with SessionLocal() as db:
            return await db.get(User, user_id)

    return asyncio.run(load())


def count_payments(SessionLocal):
    async def count():
        async with SessionLocal() as db:
            return (await db.execute(select(func.count(PaymentRecord.id)))).scalar_one()

    return asyncio.run(count())


def all_payments(SessionLocal):
    async def load():
        async with SessionLocal() as db:
            result = await db.execute(select(PaymentRecord).order_by(PaymentRecord.id))
            return list(result.scalars().all())

    return asyncio.run(load())


class FakeGateway(PayPalGateway):
    """In-memory gateway; notifications are parsed the PayPal way."""

    name = "fake"

    def __init__(self):
        self.orders = {}
        self.created = []
        self.fail_get = False

    def add_order(self, order_id, status=STATUS_PENDING, amount="12.99", currency="USD",
                  capture_id=None, captured_at=None, payer=None, reference=None):
        self.orders[order_id] = GatewayOrder(
            order_id=order_id,
            status=status,
            amount=Decimal(amount),
            currency=currency,
            capture_id=capture_id,
            payer=payer or PayerInfo(email="buyer@example.com", name="John Doe"),
            captured_at=captured_at,
            raw={"id": order_id, "status": status},
            reference=reference,
        )
        return self.orders[order_id]

    async def create_order(self, purchase_units):
        order_id = f"ORDER-{len(self.orders) + 1}"
        money = purchase_units[0]["amount"]
        self.created.append(purchase_units)
        self.add_order(
            order_id,
            amount=money["value"],
            currency=money["currency_code"],
            reference=purchase_units[0].get("custom_id"),
        )
        return order_id

    async def capture_order(self, order_id):
        order = self.orders.get(order_id)
        if order is None:
            raise UpstreamGatewayError("unknown order")
        if order.status == STATUS_SETTLED:
            raise UpstreamGatewayError("ORDER_ALREADY_CAPTURED")
        order.status = STATUS_SETTLED
        order.capture_id = f"CAP-{order_id}"
        return deepcopy(order)

    async def get_order(self, order_id):
        if self.fail_get or order_id not in self.orders:
            raise UpstreamGatewayError("gateway unavailable")
        return deepcopy(self.orders[order_id])


@pytest.fixture
def gateway():
    return FakeGateway()


def capture_event(capture_id, order_id=None, event_type="PAYMENT.CAPTURE.COMPLETED", amount="12.99"):
    resource = {"id": capture_id, "status": "COMPLETED", "amount": {"value": amount, "currency_code": "USD"}}
    if order_id:
        resource["supplementary_data"] = {"related_ids": {"order_id": order_id}}
    return {"id": f"WH-{capture_id}", "event_type": event_type, "resource": resource}
