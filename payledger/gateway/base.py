"""Gateway-neutral shapes and the adapter protocol."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Protocol

from payledger.errors import UpstreamGatewayError


@dataclass
class PayerInfo:
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass
class GatewayOrder:
    """Authoritative order state as reported by the gateway itself."""

    order_id: str
    status: str  # статус леджера, а не шлюза
    amount: Decimal
    currency: str
    capture_id: Optional[str] = None
    payer: PayerInfo = field(default_factory=PayerInfo)
    captured_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    # id строки леджера, переданный шлюзу при создании заказа
    reference: Optional[str] = None


@dataclass
class GatewayNotification:
    event_type: str
    order_id: Optional[str] = None
    capture_id: Optional[str] = None


class PaymentGateway(Protocol):
    name: str

    async def create_order(self, purchase_units: List[Dict[str, Any]]) -> str:
        ...

    async def capture_order(self, order_id: str) -> GatewayOrder:
        ...

    async def get_order(self, order_id: str) -> GatewayOrder:
        ...

    def parse_notification(self, payload: Dict[str, Any]) -> Optional[GatewayNotification]:
        """Return the identifiers of a capture-related event, ``None`` for anything else."""


def parse_decimal(value, what="amount") -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise UpstreamGatewayError(f"gateway returned invalid {what}", cause=exc) from exc
    if not amount.is_finite():
        raise UpstreamGatewayError(f"gateway returned invalid {what}")
    return amount.quantize(Decimal("0.01"))


def parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
