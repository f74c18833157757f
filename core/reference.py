"""
Checkout reference codec.

A checkout reference correlates a batch of purchase rows with one gateway
charge. It travels through the gateway as ``external_reference`` and comes
back on status lookups and notifications.

Wire format:
    single purchase    <purchase id>
    batch of N > 1     batch_<first 8 chars of first id>_<N>_<base36 epoch ms>
    after the charge   <token>|mp:<gateway payment id>

In memory the reference is a tagged value, and the database stores its
parts in separate columns; the wire string is still written for tools that
read it.
"""
from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Optional, Sequence

BATCH_PREFIX = "batch_"
GATEWAY_SEPARATOR = "|mp:"
DEFAULT_MAX_LENGTH = 64

_BATCH_PATTERN = re.compile(r"batch_[0-9A-Za-z-]{1,8}_\d+_[0-9a-z]+")
_GATEWAY_PATTERN = re.compile(r"\|mp:([0-9A-Za-z_-]+)")
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


class ReferenceKind(str, Enum):
    """Shape of a checkout reference."""

    SINGLE = "single"
    BATCH = "batch"


def to_base36(number: int) -> str:
    """Lowercase base36 rendering of a non-negative integer."""
    if number < 0:
        raise ValueError("number must be non-negative")
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


@dataclass(frozen=True)
class CheckoutReference:
    """Tagged checkout reference: ``Single(id)`` or ``Batch(tag, gateway id?)``."""

    kind: ReferenceKind
    token: str
    gateway_payment_id: Optional[str] = None

    @property
    def external_reference(self) -> str:
        """Value sent to the gateway as ``external_reference``."""
        return self.token

    def with_gateway_payment(self, gateway_payment_id: str | int) -> "CheckoutReference":
        return replace(self, gateway_payment_id=str(gateway_payment_id))

    def idempotency_key(self, method: str) -> str:
        """Deterministic charge-creation key, e.g. ``pix-<token>``."""
        return f"{method}-{self.token}"

    def to_wire(self) -> str:
        if self.gateway_payment_id:
            return f"{self.token}{GATEWAY_SEPARATOR}{self.gateway_payment_id}"
        return self.token

    def literal_purchase_ids(self) -> List[uuid.UUID]:
        """Purchase ids spelled out by a single (or legacy comma-separated) token."""
        if self.kind is not ReferenceKind.SINGLE:
            return []
        ids = []
        for part in self.token.split(","):
            try:
                ids.append(uuid.UUID(part.strip()))
            except ValueError:
                continue
        return ids

    @classmethod
    def from_wire(cls, raw: str) -> "CheckoutReference":
        """
        Parse a reference as echoed back by the gateway or read from storage.

        Tolerates surrounding whitespace, a trailing ``|mp:<id>`` part and a
        batch tag embedded in a longer string.
        """
        raw = (raw or "").strip()
        if not raw:
            raise ValueError("empty checkout reference")

        gateway_payment_id = None
        gateway_match = _GATEWAY_PATTERN.search(raw)
        if gateway_match:
            gateway_payment_id = gateway_match.group(1)
        token = raw.split("|", 1)[0].strip()

        batch_match = _BATCH_PATTERN.search(token)
        if batch_match:
            return cls(ReferenceKind.BATCH, batch_match.group(0), gateway_payment_id)
        return cls(ReferenceKind.SINGLE, token, gateway_payment_id)


def encode_reference(
    purchase_ids: Sequence[uuid.UUID | str],
    now_ms: Optional[int] = None,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> CheckoutReference:
    """
    Build the checkout reference for a batch of purchase rows.

    Args:
        purchase_ids: Ids of the rows covered by one charge, in creation order
        now_ms: Epoch milliseconds used for the batch suffix (defaults to now)
        max_length: Length limit of the gateway correlation field

    Returns:
        CheckoutReference: Single reference for one row, batch reference otherwise
    """
    if not purchase_ids:
        raise ValueError("cannot encode a reference for an empty batch")

    first = str(purchase_ids[0])
    if len(purchase_ids) == 1:
        reference = CheckoutReference(ReferenceKind.SINGLE, first)
    else:
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        tag = f"{BATCH_PREFIX}{first[:8]}_{len(purchase_ids)}_{to_base36(now_ms)}"
        reference = CheckoutReference(ReferenceKind.BATCH, tag)

    if len(reference.token) > max_length:
        raise ValueError(
            f"checkout reference {reference.token!r} exceeds {max_length} characters"
        )
    return reference
