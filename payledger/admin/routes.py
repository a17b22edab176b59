from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from payledger import config
from payledger.api.deps import http_error
from payledger.db.session import SessionLocal
from payledger.errors import PaymentError
from payledger.services import invoice_service, lifecycle_service

admin_router = APIRouter(prefix="/admin")


async def get_db():
    async with SessionLocal() as db:
        yield db


def require_admin(x_admin_token: Optional[str] = Header(None)):
    if config.ADMIN_TOKEN and x_admin_token != config.ADMIN_TOKEN:
        raise HTTPException(status_code=403, detail="Admin token required")


class BindOwnerRequest(BaseModel):
    owner_id: int
    plan: Optional[str] = None
    billing_period: Optional[str] = None


def _row(record):
    return {
        "id": record.id,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "amount": f"{record.amount:.2f}",
        "currency": record.currency,
        "status": record.status,
        "order_id": record.gateway_order_id,
        "capture_id": record.gateway_capture_id,
        "payer_email": record.payer_email,
        "payer_name": record.payer_name,
        "owner_id": record.owner_id,
        "plan": record.plan,
    }


@admin_router.get("/payments/unresolved", dependencies=[Depends(require_admin)])
async def unresolved_payments(limit: int = 100, db: AsyncSession = Depends(get_db)):
    """Gateway payments that could not be tied to a user."""
    try:
        records = await invoice_service.list_unresolved(db, limit=limit)
    except PaymentError as exc:
        raise http_error(exc)
    return [_row(r) for r in records]


@admin_router.post("/payments/{payment_id}/bind", dependencies=[Depends(require_admin)])
async def bind_payment_owner(
    payment_id: int, body: BindOwnerRequest, db: AsyncSession = Depends(get_db)
):
    try:
        result = await lifecycle_service.bind_owner(
            db, payment_id, body.owner_id, body.plan, body.billing_period
        )
    except PaymentError as exc:
        raise http_error(exc)
    return {**_row(result.record), "granted": result.granted}
