"""
Business sub-statuses on top of the persisted coarse status.

The `bookings.status` column only holds `BookingStatus`. The richer vocabulary
(quote sent, deposit paid, payment failed, ...) lives in `bookings.status_note`
as a tagged JSON note:

    QUOTE_SENT:{"message":"Quote attached","total_amount":1000000}

A note without a tag is plain JSON. `encode_state` and `decode_state` are the
only place that reads or writes this format, and they are exact inverses for
every valid `BookingState`.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from app.models import BookingStatus


class SubStatus(StrEnum):
    QUOTE_SENT = "quote_sent"
    QUOTE_ACCEPTED = "quote_accepted"
    QUOTE_REJECTED = "quote_rejected"
    DEPOSIT_PAID = "deposit_paid"
    BALANCE_PAID = "balance_paid"
    FULLY_PAID = "fully_paid"
    PAYMENT_FAILED = "payment_failed"

    @property
    def tag(self) -> str:
        return self.value.upper()


# Coarse status each sub-status may be stored under; None means any.
SUB_STATUS_HOME: dict[SubStatus, BookingStatus | None] = {
    SubStatus.QUOTE_SENT: BookingStatus.REQUEST,
    SubStatus.QUOTE_ACCEPTED: BookingStatus.APPROVED,
    SubStatus.QUOTE_REJECTED: BookingStatus.DECLINED,
    SubStatus.DEPOSIT_PAID: BookingStatus.DOWNPAYMENT,
    SubStatus.BALANCE_PAID: BookingStatus.FULLY_PAID,
    SubStatus.FULLY_PAID: BookingStatus.FULLY_PAID,
    SubStatus.PAYMENT_FAILED: None,
}

_TAGS: dict[str, SubStatus] = {s.tag: s for s in SubStatus}
_NOTE_RE = re.compile(r"^(?P<tag>[A-Z_]+):(?P<body>.*)$", re.DOTALL)


def is_compatible(status: BookingStatus, sub_status: SubStatus | None) -> bool:
    if sub_status is None:
        return True
    home = SUB_STATUS_HOME[sub_status]
    return home is None or home == status


@dataclass(frozen=True)
class BookingState:
    status: BookingStatus
    sub_status: SubStatus | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not is_compatible(self.status, self.sub_status):
            raise ValueError(
                f"Sub-status '{self.sub_status}' cannot be stored under '{self.status}'"
            )

    @property
    def extended_status(self) -> str:
        """The most specific business status: sub-status if present, else coarse."""
        return str(self.sub_status or self.status)

    @property
    def message(self) -> str | None:
        return self.details.get("message")


def encode_state(state: BookingState) -> tuple[BookingStatus, str | None]:
    """Translate a business state into (persisted status, status note)."""
    if state.sub_status is None and not state.details:
        return state.status, None

    body = json.dumps(state.details, sort_keys=True, separators=(",", ":"), default=str)
    if state.sub_status is None:
        return state.status, body
    return state.status, f"{state.sub_status.tag}:{body}"


def decode_state(status: BookingStatus | str, note: str | None) -> BookingState:
    """Rebuild the business state from a stored row. Never raises."""
    status = BookingStatus(status)
    if not note:
        return BookingState(status)

    sub_status: SubStatus | None = None
    body = note
    match = _NOTE_RE.match(note)
    if match and match.group("tag") in _TAGS:
        candidate = _TAGS[match.group("tag")]
        if is_compatible(status, candidate):
            sub_status = candidate
            body = match.group("body")

    try:
        details = json.loads(body)
    except ValueError:
        details = None
    if not isinstance(details, dict):
        # legacy free-text note
        return BookingState(status, sub_status, {"message": body})
    return BookingState(status, sub_status, details)
