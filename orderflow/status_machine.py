"""
Orderflow — order status state machine

The single place that decides which status changes are legal. Checkout,
the admin status command and the payment webhook all ask this module, so
they can never disagree.

    PENDING ──▶ PROCESSING ──▶ SHIPPED ──▶ DELIVERED
       │            │             │
       └────────────┴─────────────┴──────▶ CANCELLED

DELIVERED and CANCELLED are terminal.
"""

from .errors import InvalidStateTransitionError
from .models import OrderStatus

VALID_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Legal, but the caller has to acknowledge a warning first.
RISKY_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.SHIPPED: frozenset({OrderStatus.CANCELLED}),
}

_TERMINAL_MESSAGES = {
    OrderStatus.DELIVERED: (
        "Cannot change status of delivered orders. "
        "Use the refund system to process returns."
    ),
    OrderStatus.CANCELLED: (
        "Cannot change status of cancelled orders. Create a new order instead."
    ),
}

_REJECTION_MESSAGES = {
    (OrderStatus.SHIPPED, OrderStatus.PENDING): (
        "Cannot mark shipped order as pending. Order is already in transit."
    ),
    (OrderStatus.SHIPPED, OrderStatus.PROCESSING): (
        "Cannot reprocess shipped order. Order is already with carrier."
    ),
    (OrderStatus.PROCESSING, OrderStatus.PENDING): (
        "Cannot move a processing order back to pending. Payment was already confirmed."
    ),
    (OrderStatus.PENDING, OrderStatus.SHIPPED): (
        "Cannot ship an order before it has been processed."
    ),
    (OrderStatus.PENDING, OrderStatus.DELIVERED): (
        "Cannot mark an order delivered before it has shipped."
    ),
    (OrderStatus.PROCESSING, OrderStatus.DELIVERED): (
        "Cannot mark an order delivered before it has shipped."
    ),
}

_WARNINGS = {
    (OrderStatus.SHIPPED, OrderStatus.CANCELLED): (
        "Package may already be in transit. Customer might still receive it. "
        "Consider processing a refund after delivery instead."
    ),
}


def is_valid_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return OrderStatus(to_status) in VALID_TRANSITIONS.get(OrderStatus(from_status), frozenset())


def requires_confirmation(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return OrderStatus(to_status) in RISKY_TRANSITIONS.get(OrderStatus(from_status), frozenset())


def is_terminal(status: OrderStatus) -> bool:
    return not VALID_TRANSITIONS[OrderStatus(status)]


def valid_next_statuses(status: OrderStatus) -> list[OrderStatus]:
    """Legal targets in declaration order, for building status pickers."""
    allowed = VALID_TRANSITIONS[OrderStatus(status)]
    return [s for s in OrderStatus if s in allowed]


def describe_rejection(from_status: OrderStatus, to_status: OrderStatus) -> str:
    """
    User-facing explanation of why a transition is refused.

    Terminal states get their own message regardless of the target;
    known structural mistakes get a specific hint; anything else falls
    back to a generic message naming both statuses.
    """
    from_status = OrderStatus(from_status)
    to_status = OrderStatus(to_status)
    if from_status in _TERMINAL_MESSAGES:
        return _TERMINAL_MESSAGES[from_status]
    if from_status == to_status:
        return f"Order is already {from_status.value}."
    return _REJECTION_MESSAGES.get(
        (from_status, to_status),
        f"Cannot transition from {from_status.value} to {to_status.value}. "
        "Invalid status change.",
    )


def transition_warning(from_status: OrderStatus, to_status: OrderStatus) -> str | None:
    return _WARNINGS.get((OrderStatus(from_status), OrderStatus(to_status)))


def ensure_transition(from_status: OrderStatus, to_status: OrderStatus) -> None:
    """Raise InvalidStateTransitionError unless the move is legal."""
    if not is_valid_transition(from_status, to_status):
        raise InvalidStateTransitionError(
            OrderStatus(from_status).value,
            OrderStatus(to_status).value,
            describe_rejection(from_status, to_status),
        )
