"""External integrations for payment processing."""
from .gateway import GatewayClient, GatewayError, GatewayErrorType, GatewayPayment
from .mercadopago_client import MercadoPagoClient

__all__ = [
    "GatewayClient",
    "GatewayError",
    "GatewayErrorType",
    "GatewayPayment",
    "MercadoPagoClient",
]
