"""
Payment status vocabulary, classification and cache TTL policy.

Every component that reads or writes payment status goes through this module:
caching decisions, write guards and webhook handling must classify statuses
identically, otherwise a cached final status may be trusted in one place and
revalidated in another.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class PaymentStatus(str, Enum):
    """Provider-side payment intent statuses plus the local initial status."""
    CREATED = "created"
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class StatusClass(str, Enum):
    INTERMEDIATE = "intermediate"
    FINAL = "final"
    UNKNOWN = "unknown"


# requires_capture needs a manual capture outside the reconciliation loop
FINAL_STATUSES = frozenset({
    PaymentStatus.SUCCEEDED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.CANCELED.value,
    PaymentStatus.REQUIRES_CAPTURE.value,
})

INTERMEDIATE_STATUSES = frozenset({
    PaymentStatus.REQUIRES_PAYMENT_METHOD.value,
    PaymentStatus.REQUIRES_CONFIRMATION.value,
    PaymentStatus.REQUIRES_ACTION.value,
    PaymentStatus.PROCESSING.value,
})


def _value(status: object) -> str:
    if isinstance(status, Enum):
        return str(status.value)
    return status if isinstance(status, str) else ""


def classify(status: object) -> StatusClass:
    """Classify a status string; anything outside the vocabulary is UNKNOWN."""
    value = _value(status)
    if value in FINAL_STATUSES:
        return StatusClass.FINAL
    if value in INTERMEDIATE_STATUSES:
        return StatusClass.INTERMEDIATE
    return StatusClass.UNKNOWN


def is_final(status: object) -> bool:
    return classify(status) is StatusClass.FINAL


def is_intermediate(status: object) -> bool:
    return classify(status) is StatusClass.INTERMEDIATE


def is_success(status: object) -> bool:
    return _value(status) == PaymentStatus.SUCCEEDED.value


@dataclass(frozen=True)
class TTLPolicy:
    """Cache lifetimes in seconds, keyed by status classification.

    Final outcomes get the shortest trust window: they are the statuses most
    often re-queried and the ones where serving a stale value costs money.
    """

    final: int = 5
    intermediate: int = 10
    unknown: int = 5

    def __post_init__(self) -> None:
        for name in ("final", "intermediate", "unknown"):
            if getattr(self, name) <= 0:
                raise ValueError(f"TTL for {name} statuses must be positive")

    def ttl_for(self, status: object) -> int:
        cls = classify(status)
        if cls is StatusClass.FINAL:
            return self.final
        if cls is StatusClass.INTERMEDIATE:
            return self.intermediate
        return self.unknown


DEFAULT_TTL_POLICY = TTLPolicy()


def ttl_for(status: object, policy: Optional[TTLPolicy] = None) -> int:
    return (policy or DEFAULT_TTL_POLICY).ttl_for(status)


class TransitionDecision(str, Enum):
    APPLY = "apply"
    NOOP = "noop"
    REJECT_DOWNGRADE = "reject_downgrade"
    REJECT_FINAL_CONFLICT = "reject_final_conflict"

    @property
    def applied(self) -> bool:
        return self is TransitionDecision.APPLY

    @property
    def rejected(self) -> bool:
        return self in (TransitionDecision.REJECT_DOWNGRADE, TransitionDecision.REJECT_FINAL_CONFLICT)


# manual capture resolves requires_capture outside the reconciliation loop
CAPTURE_RESOLUTIONS = frozenset({PaymentStatus.SUCCEEDED.value, PaymentStatus.CANCELED.value})


def decide_transition(current: Optional[str], incoming: str) -> TransitionDecision:
    """Guard for status writes.

    Final statuses are immutable once stored: a final status never moves back
    to a non-final one, and never flips to a different final status regardless
    of event arrival order. The only exit from a final status is a captured or
    voided ``requires_capture``.
    """
    if current == incoming:
        return TransitionDecision.NOOP
    if current is None or not is_final(current):
        return TransitionDecision.APPLY
    if current == PaymentStatus.REQUIRES_CAPTURE.value and incoming in CAPTURE_RESOLUTIONS:
        return TransitionDecision.APPLY
    if is_final(incoming):
        return TransitionDecision.REJECT_FINAL_CONFLICT
    return TransitionDecision.REJECT_DOWNGRADE
