"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CardCheckoutResponse,
    CheckoutRequest,
    PaymentStatusResponse,
    PixCheckoutResponse,
)

__all__ = [
    "app",
    "CardCheckoutResponse",
    "CheckoutRequest",
    "PaymentStatusResponse",
    "PixCheckoutResponse",
]
