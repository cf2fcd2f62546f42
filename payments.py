"""
Razorpay payment entity and its FileMaker record mapping.

Razorpay payloads are treated as untrusted shapes: any nested field may be
missing, null, or of the wrong type. Every read goes through ``dig`` so the
mapping never raises on a partial payload; absent values fall back to a
defined default instead.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

logger = logging.getLogger(__name__)

PAYMENT_CAPTURED = "payment.captured"

# Note keys the school checkout form attaches to every order.
NOTE_KEYS = ("student_name", "admission_number", "branch")


def dig(data: Any, *path: str, default: Any = "") -> Any:
    """
    Walk ``path`` through nested mappings and return the value found.

    Returns ``default`` when any level is missing, is not a mapping, or the
    final value is None.

    >>> dig({"a": {"b": 1}}, "a", "b")
    1
    >>> dig({"a": "not-a-dict"}, "a", "b", default=0)
    0
    """
    current = data
    for key in path:
        if not isinstance(current, Mapping):
            return default
        current = current.get(key)
        if current is None:
            return default
    return current


def _text(value: Any) -> str:
    if isinstance(value, (Mapping, list)):
        return ""
    return str(value)


def _minor_units(value: Any) -> int:
    # bool is an int subclass; a boolean amount is a malformed payload.
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError, OverflowError):
        logger.warning("PAYMENT_AMOUNT_INVALID value_type=%s", type(value).__name__)
        return 0


def to_major_units(amount: int) -> float:
    """Convert paise (or any minor unit) to rupees, rounded to 2 dp."""
    major = Decimal(amount) / 100
    try:
        return float(major.quantize(Decimal("0.01")))
    except InvalidOperation:
        # More digits than the decimal context holds; keep the value unrounded.
        logger.warning("PAYMENT_AMOUNT_NOT_ROUNDED digits=%d", len(str(abs(amount))))
        return float(major)


@dataclass(frozen=True)
class PaymentEntity:
    """The ``payload.payment.entity`` object of a Razorpay webhook."""
    id: str
    order_id: str = ""
    amount: int = 0
    currency: str = ""
    status: str = ""
    contact: str = ""
    email: str = ""
    notes: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, entity: Any) -> "PaymentEntity":
        notes = {key: _text(dig(entity, "notes", key)) for key in NOTE_KEYS}
        return cls(
            id=_text(dig(entity, "id")),
            order_id=_text(dig(entity, "order_id")),
            amount=_minor_units(dig(entity, "amount", default=0)),
            currency=_text(dig(entity, "currency")),
            status=_text(dig(entity, "status")),
            contact=_text(dig(entity, "contact")),
            email=_text(dig(entity, "email")),
            notes=notes,
        )

    def to_filemaker_record(self) -> dict[str, Any]:
        """Field map written to the FileMaker ``razor`` layout."""
        return {
            "payment_id": self.id,
            "order_id": self.order_id,
            "total payment amount": to_major_units(self.amount),
            "currency": self.currency,
            "payment status": self.status,
            "student_name": self.notes.get("student_name", ""),
            "admission_number": self.notes.get("admission_number", ""),
            "branch": self.notes.get("branch", ""),
            "email": self.email,
            "phone": self.contact,
        }


@dataclass(frozen=True)
class WebhookEvent:
    """Parsed Razorpay webhook: event name plus the payment it refers to."""
    event_type: str
    payment: PaymentEntity

    @property
    def is_payment_captured(self) -> bool:
        return self.event_type == PAYMENT_CAPTURED

    @classmethod
    def from_payload(cls, payload: Any) -> "WebhookEvent":
        return cls(
            event_type=_text(dig(payload, "event")),
            payment=PaymentEntity.from_payload(dig(payload, "payload", "payment", "entity", default={})),
        )
