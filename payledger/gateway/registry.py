"""Selects the process-wide gateway adapter."""

from payledger import config
from payledger.gateway.base import PaymentGateway

_gateway = None


def get_gateway() -> PaymentGateway:
    """Process-wide adapter chosen by ``PAYMENT_GATEWAY``."""
    global _gateway
    if _gateway is None:
        if config.PAYMENT_GATEWAY == "yookassa":
            from payledger.gateway.yookassa_gateway import YooKassaGateway

            _gateway = YooKassaGateway()
        else:
            from payledger.gateway.paypal import PayPalGateway

            _gateway = PayPalGateway()
    return _gateway


def set_gateway(gateway) -> None:
    global _gateway
    _gateway = gateway
