"""
Purchase status state machine.

    pending --approved--> completed
    pending --rejected--> failed

``completed`` and ``failed`` are terminal: every transition out of them is
a no-op, whoever asks for it.
"""
from enum import Enum
from typing import FrozenSet, Optional


class PurchaseStatus(str, Enum):
    """Lifecycle status of a purchase row."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[PurchaseStatus] = frozenset(
    {PurchaseStatus.COMPLETED, PurchaseStatus.FAILED}
)

# Gateway payment statuses that settle a purchase
_GATEWAY_TERMINAL = {
    "approved": PurchaseStatus.COMPLETED,
    "rejected": PurchaseStatus.FAILED,
    "cancelled": PurchaseStatus.FAILED,
}


class InvalidTransitionError(ValueError):
    """Raised when a transition back to ``pending`` is requested."""


def transition(
    current: PurchaseStatus | str, target: PurchaseStatus | str
) -> Optional[PurchaseStatus]:
    """
    Apply a status transition.

    Args:
        current: Status stored on the row
        target: Status observed at the gateway

    Returns:
        Optional[PurchaseStatus]: The new status, or None when nothing
        changes (row already terminal, or target equals current)

    Raises:
        InvalidTransitionError: If ``target`` is ``pending``
    """
    current = PurchaseStatus(current)
    target = PurchaseStatus(target)

    if target is PurchaseStatus.PENDING:
        if current is PurchaseStatus.PENDING:
            return None
        raise InvalidTransitionError(f"cannot move a {current.value} purchase back to pending")
    if current.is_terminal:
        return None
    return target


def status_from_gateway(gateway_status: Optional[str]) -> PurchaseStatus:
    """
    Map a gateway payment status to the purchase status it implies.

    ``pending``, ``in_process``, ``authorized``, ``in_mediation`` and unknown
    values imply no change and map to ``pending``.
    """
    return _GATEWAY_TERMINAL.get((gateway_status or "").lower(), PurchaseStatus.PENDING)
