"""Core checkout and reconciliation logic."""
from .checkout import CheckoutService
from .ledger import PurchaseLedger
from .reconciliation import PendingPurchaseSweeper
from .revenue_share import RevenueShareRecorder

__all__ = [
    "CheckoutService",
    "PendingPurchaseSweeper",
    "PurchaseLedger",
    "RevenueShareRecorder",
]
