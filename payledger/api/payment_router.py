# payledger/api/payment_router.py

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from payledger.api.deps import get_current_owner, get_payment_gateway, http_error
from payledger.db.session import SessionLocal
from payledger.errors import PaymentError
from payledger.services import (
    checkout_service,
    entitlement_service,
    invoice_service,
    lifecycle_service,
    webhook_reconciler,
)
from payledger.services.invoice_service import invoice_from_record
from payledger.services.lifecycle_service import PaymentMetadata

router = APIRouter(prefix="/api/payments", tags=["payments"])


async def get_db():
    async with SessionLocal() as db:
        yield db


# ---------- МОДЕЛИ ЗАПРОСОВ ----------
class CreatePendingRequest(BaseModel):
    plan: str = "Pro"
    billingPeriod: Optional[str] = "monthly"
    amount: Optional[str] = None
    currency: Optional[str] = None
    clientTempId: Optional[str] = None
    createdAt: Optional[datetime] = None
    reason: Optional[str] = None


class AttachOrderRequest(BaseModel):
    paymentId: int
    orderID: str
    reason: Optional[str] = None
    changeTo: Optional[str] = None
    clientTempId: Optional[str] = None


class AttachOrderPublicRequest(BaseModel):
    orderID: str
    clientTempId: Optional[str] = None
    createdAt: Optional[datetime] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    plan: Optional[str] = None


class CreateOrderRequest(BaseModel):
    plan: str = "Pro"
    billingPeriod: Optional[str] = "monthly"
    amount: Optional[str] = None
    reason: Optional[str] = None


class CaptureRequest(BaseModel):
    orderID: str


def _payment_response(record) -> Dict[str, Any]:
    return {"payment": invoice_from_record(record), "paymentId": record.id}


# ---------- ЖИЗНЕННЫЙ ЦИКЛ ПЛАТЕЖА ----------
@router.post("/create-pending")
async def create_pending(
    body: CreatePendingRequest,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
):
    """Pending row the UI can show while the gateway checkout is running."""
    try:
        record = await lifecycle_service.provisional_create(
            db,
            owner_id,
            body.plan,
            body.billingPeriod,
            amount=body.amount,
            token=body.clientTempId,
            requested_created_at=body.createdAt,
            reason=body.reason,
            currency=body.currency,
        )
    except PaymentError as exc:
        raise http_error(exc)
    return _payment_response(record)


@router.post("/attach-order")
async def attach_order(
    body: AttachOrderRequest,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
):
    metadata = PaymentMetadata(
        reason=body.reason, change_to=body.changeTo, correlation_token=body.clientTempId
    )
    try:
        record = await lifecycle_service.attach_order(
            db, owner_id, body.paymentId, body.orderID, metadata
        )
    except PaymentError as exc:
        raise http_error(exc)
    return _payment_response(record)


@router.post("/attach-order-public")
async def attach_order_public(body: AttachOrderPublicRequest, db: AsyncSession = Depends(get_db)):
    """Fallback used when the client cannot authenticate."""
    try:
        record = await lifecycle_service.attach_order_public(
            db,
            body.orderID,
            token=body.clientTempId,
            requested_created_at=body.createdAt,
            amount=body.amount,
            plan=body.plan,
            currency=body.currency,
        )
    except PaymentError as exc:
        raise http_error(exc)
    return {"paymentId": record.id, "status": record.status}


@router.post("/create-order")
async def create_order(
    body: CreateOrderRequest,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    try:
        record, order_id = await checkout_service.create_order(
            db, gateway, owner_id, body.plan, body.billingPeriod, body.amount, body.reason
        )
    except PaymentError as exc:
        raise http_error(exc)
    return {"orderID": order_id, **_payment_response(record)}


@router.post("/capture")
async def capture(
    body: CaptureRequest,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    try:
        result = await checkout_service.capture_order(db, gateway, owner_id, body.orderID)
        access = await entitlement_service.compute_entitlement(db, owner_id)
    except PaymentError as exc:
        raise http_error(exc)
    return {**_payment_response(result.record), "access": access.as_dict()}


# ---------- ВЕБХУК ШЛЮЗА ----------
@router.post("/webhook")
async def webhook(payload: Dict[str, Any], background_tasks: BackgroundTasks):
    """Acknowledge at once; reconciliation runs after the response is sent."""
    background_tasks.add_task(webhook_reconciler.reconcile_notification, payload)
    return {"received": True}


# ---------- ЧТЕНИЕ ----------
@router.get("/check-access")
async def check_access(
    owner_id: int = Depends(get_current_owner), db: AsyncSession = Depends(get_db)
):
    try:
        access = await entitlement_service.compute_entitlement(db, owner_id)
    except PaymentError as exc:
        raise http_error(exc)
    return access.as_dict()


@router.get("/invoices")
async def invoices(owner_id: int = Depends(get_current_owner), db: AsyncSession = Depends(get_db)):
    try:
        return await invoice_service.list_invoices(db, owner_id)
    except PaymentError as exc:
        raise http_error(exc)


@router.delete("/clear-pending")
async def clear_pending(
    owner_id: int = Depends(get_current_owner), db: AsyncSession = Depends(get_db)
):
    try:
        deleted = await invoice_service.clear_pending_for_user(db, owner_id)
    except PaymentError as exc:
        raise http_error(exc)
    return {"success": True, "deleted": deleted}


@router.get("/{payment_id}")
async def get_payment(
    payment_id: int,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
):
    try:
        record = await invoice_service.get_payment_for_user(db, owner_id, payment_id)
    except PaymentError as exc:
        raise http_error(exc)
    return invoice_from_record(record)


@router.delete("/{payment_id}")
async def delete_payment(
    payment_id: int,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
):
    try:
        await invoice_service.delete_payment_for_user(db, owner_id, payment_id)
    except PaymentError as exc:
        raise http_error(exc)
    return {"success": True}
