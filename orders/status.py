"""
Order status lifecycle.

Order Status Flow:
    PENDING    -> CONFIRMED | CANCELLED
    CONFIRMED  -> PROCESSING | CANCELLED
    PROCESSING -> SHIPPED | CANCELLED
    SHIPPED    -> DELIVERED | RETURNED
    DELIVERED, CANCELLED, RETURNED are terminal.

Staying in the same status is always allowed. Anything else outside the
flow needs an explicit administrator override (force=True).
"""
from types import MappingProxyType

from django.db import models

from core.exceptions import InvalidTransitionError, ValidationError


class OrderStatus(models.TextChoices):
    PENDING = 'PENDING', 'Pending'
    CONFIRMED = 'CONFIRMED', 'Confirmed'
    PROCESSING = 'PROCESSING', 'Processing'
    SHIPPED = 'SHIPPED', 'Shipped'
    DELIVERED = 'DELIVERED', 'Delivered'
    CANCELLED = 'CANCELLED', 'Cancelled'
    RETURNED = 'RETURNED', 'Returned'


class PaymentStatus(models.TextChoices):
    PENDING = 'PENDING', 'Pending'
    PAID = 'PAID', 'Paid'
    FAILED = 'FAILED', 'Failed'
    REFUNDED = 'REFUNDED', 'Refunded'


class PaymentMethod(models.TextChoices):
    RAZORPAY = 'razorpay', 'Razorpay'
    STRIPE = 'stripe', 'Stripe'
    COD = 'cod', 'Cash on Delivery'


TERMINAL_STATUSES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.RETURNED,
})

# Statuses whose items are back on the shelf
RESTOCKED_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.RETURNED})

ORDER_STATUS_FLOW = MappingProxyType({
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.RETURNED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
})


def to_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status: {value}", field='status')


def allowed_transitions(current) -> frozenset:
    """Statuses directly reachable from current under the normal flow."""
    return ORDER_STATUS_FLOW[to_status(current)]


def can_transition_order(current, requested) -> bool:
    current, requested = to_status(current), to_status(requested)
    return requested == current or requested in ORDER_STATUS_FLOW[current]


def validate_transition(current, requested, force: bool = False) -> bool:
    """
    Check a requested status change.

    Returns:
        True when the change is an override (forced and outside the flow),
        False when the flow allows it.

    Raises:
        InvalidTransitionError: outside the flow and not forced
        ValidationError: unknown status value
    """
    if can_transition_order(current, requested):
        return False
    if not force:
        raise InvalidTransitionError(to_status(current).value, to_status(requested).value)
    return True
