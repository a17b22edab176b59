"""Shared FastAPI dependencies and error translation for the routers."""

import logging
from typing import Optional

from fastapi import Header, HTTPException

from payledger.errors import (
    PaymentError,
    StoreError,
    UpstreamGatewayError,
    ValidationError,
)
from payledger.gateway.registry import get_gateway


def get_current_owner(x_user_id: Optional[str] = Header(None)) -> int:
    """Owner id set by the authenticating proxy in front of this service."""
    if not x_user_id or not x_user_id.strip().isdigit() or int(x_user_id) <= 0:
        raise HTTPException(status_code=401, detail="Invalid or missing user id")
    return int(x_user_id)


def get_payment_gateway():
    return get_gateway()


def http_error(exc: PaymentError) -> HTTPException:
    """4xx for caller mistakes, 5xx with a generic message for everything else."""
    if isinstance(exc, UpstreamGatewayError):
        logging.warning("Gateway failure: %s (cause: %r)", exc.message, exc.cause)
        return HTTPException(status_code=502, detail="Payment gateway unavailable, please retry")
    if isinstance(exc, StoreError):
        logging.error("Store failure: %s (cause: %r)", exc.message, exc.cause)
        return HTTPException(status_code=500, detail="Failed to process payment")
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=exc.message)
    return HTTPException(status_code=exc.status_code, detail=exc.message)
