"""PayPal Orders v2 adapter over ``httpx``."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from payledger import config
from payledger.errors import UpstreamGatewayError
from payledger.gateway.base import (
    GatewayNotification,
    GatewayOrder,
    PayerInfo,
    parse_decimal,
    parse_timestamp,
)
from payledger.models.payment import (
    STATUS_ATTACHED,
    STATUS_CANCELLED,
    STATUS_DENIED,
    STATUS_PENDING,
    STATUS_SETTLED,
)

# Статус захвата/заказа PayPal -> статус леджера
CAPTURE_STATUSES = {
    "COMPLETED": STATUS_SETTLED,
    "PENDING": STATUS_ATTACHED,
    "DECLINED": STATUS_DENIED,
    "FAILED": STATUS_DENIED,
    "DENIED": STATUS_DENIED,
}
ORDER_STATUSES = {
    "CREATED": STATUS_PENDING,
    "SAVED": STATUS_PENDING,
    "PAYER_ACTION_REQUIRED": STATUS_PENDING,
    "APPROVED": STATUS_ATTACHED,
    "COMPLETED": STATUS_SETTLED,
    "VOIDED": STATUS_CANCELLED,
}

ORDER_EVENTS = ("CHECKOUT.ORDER.APPROVED", "CHECKOUT.ORDER.COMPLETED")
CAPTURE_EVENTS = (
    "PAYMENT.CAPTURE.COMPLETED",
    "PAYMENT.CAPTURE.DENIED",
    "PAYMENT.CAPTURE.DECLINED",
    "PAYMENT.CAPTURE.PENDING",
)


def order_from_payload(data: Dict[str, Any]) -> GatewayOrder:
    """Normalize a PayPal order (as returned by GET or capture) into a GatewayOrder."""
    order_id = data.get("id")
    if not order_id:
        raise UpstreamGatewayError("PayPal order without id")

    units = data.get("purchase_units") or []
    unit = units[0] if units else {}
    captures = ((unit.get("payments") or {}).get("captures")) or []
    capture = captures[0] if captures else None

    if capture:
        gateway_status = str(capture.get("status") or "").upper()
        status = CAPTURE_STATUSES.get(gateway_status)
        money = capture.get("amount") or unit.get("amount") or {}
    else:
        gateway_status = str(data.get("status") or "").upper()
        status = ORDER_STATUSES.get(gateway_status)
        money = unit.get("amount") or {}
    if status is None:
        raise UpstreamGatewayError(f"unexpected PayPal status {gateway_status!r}")
    if "value" not in money:
        raise UpstreamGatewayError("PayPal order without amount")

    payer = data.get("payer") or {}
    name = payer.get("name") or {}
    full_name = " ".join(p for p in (name.get("given_name"), name.get("surname")) if p) or None

    return GatewayOrder(
        order_id=str(order_id),
        status=status,
        amount=parse_decimal(money.get("value")),
        currency=str(money.get("currency_code") or config.DEFAULT_CURRENCY).upper(),
        capture_id=capture.get("id") if capture else None,
        payer=PayerInfo(email=payer.get("email_address"), name=full_name),
        captured_at=parse_timestamp(
            (capture or {}).get("create_time") or data.get("update_time")
        ),
        raw=data,
        reference=unit.get("custom_id") or unit.get("reference_id"),
    )


class PayPalGateway:
    name = "paypal"

    def __init__(
        self,
        client_id: str = None,
        client_secret: str = None,
        base_url: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id if client_id is not None else config.PAYPAL_CLIENT_ID
        self.client_secret = (
            client_secret if client_secret is not None else config.PAYPAL_CLIENT_SECRET
        )
        self.base_url = (base_url or config.PAYPAL_API_BASE).rstrip("/")
        self.timeout = timeout or config.GATEWAY_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        )

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        if not self.client_id or not self.client_secret:
            raise UpstreamGatewayError(
                "PayPal credentials are not configured "
                "(set PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET)."
            )
        response = await client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        response.raise_for_status()
        token = response.json().get("access_token")
        if not token:
            raise UpstreamGatewayError("PayPal token response without access_token")
        return token

    async def _request(self, method: str, path: str, json: Any = None) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                token = await self._access_token(client)
                response = await client.request(
                    method,
                    path,
                    json=json,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Content-Type": "application/json",
                        "Prefer": "return=representation",
                    },
                )
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            logging.warning(
                "PayPal %s %s failed with %s", method, path, exc.response.status_code
            )
            raise UpstreamGatewayError(
                f"PayPal responded with {exc.response.status_code}", cause=exc
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logging.warning("PayPal %s %s failed: %s", method, path, exc)
            raise UpstreamGatewayError("PayPal request failed", cause=exc) from exc

    async def create_order(self, purchase_units: List[Dict[str, Any]]) -> str:
        data = await self._request(
            "POST",
            "/v2/checkout/orders",
            json={"intent": "CAPTURE", "purchase_units": purchase_units},
        )
        order_id = data.get("id")
        if not order_id:
            raise UpstreamGatewayError("PayPal order creation returned no id")
        return str(order_id)

    async def capture_order(self, order_id: str) -> GatewayOrder:
        data = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture")
        return order_from_payload(data)

    async def get_order(self, order_id: str) -> GatewayOrder:
        data = await self._request("GET", f"/v2/checkout/orders/{order_id}")
        return order_from_payload(data)

    def parse_notification(self, payload: Dict[str, Any]) -> Optional[GatewayNotification]:
        event_type = payload.get("event_type") or payload.get("eventType")
        resource = payload.get("resource") or {}
        if event_type in ORDER_EVENTS:
            return GatewayNotification(event_type=event_type, order_id=resource.get("id"))
        if event_type in CAPTURE_EVENTS:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            return GatewayNotification(
                event_type=event_type,
                order_id=related.get("order_id") or resource.get("order_id"),
                capture_id=resource.get("id"),
            )
        return None
