"""
Payment status flow.

Every status write in the ledger is checked against this table before the
conditional update is issued.
"""
from typing import Dict, FrozenSet, Iterable

from payment_engine.core.errors import PaymentProcessingError
from payment_engine.core.types import PaymentStatus

PAYMENT_STATUS_FLOW: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {
            PaymentStatus.PROCESSING,
            PaymentStatus.PAID,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        }
    ),
    PaymentStatus.PROCESSING: frozenset(
        {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.PAID: frozenset(
        {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED}
    ),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING}),
    # Self-edge: a second partial refund keeps the status
    PaymentStatus.PARTIALLY_REFUNDED: frozenset(
        {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED}
    ),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    """Return True if ``current -> target`` is an edge of the flow table."""
    return target in PAYMENT_STATUS_FLOW[PaymentStatus(current)]


def is_terminal(status: PaymentStatus) -> bool:
    return not PAYMENT_STATUS_FLOW[PaymentStatus(status)]


def ensure_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    """
    Validate a single edge.

    Raises:
        PaymentProcessingError: If the edge is not in the flow table
    """
    if not can_transition(current, target):
        raise PaymentProcessingError(
            f"Cannot transition payment from {PaymentStatus(current).value} "
            f"to {PaymentStatus(target).value}",
            current_status=PaymentStatus(current),
            attempted_status=PaymentStatus(target),
        )


def ensure_transitions(
    expected: Iterable[PaymentStatus], target: PaymentStatus
) -> None:
    """Validate every ``expected -> target`` edge of a conditional transition."""
    for status in expected:
        ensure_transition(status, target)
