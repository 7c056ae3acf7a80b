"""
Stock arithmetic for the movement ledger.

Pure functions over integers and movement types; persistence lives in
inventory.services. The invariant every movement satisfies:

    new_stock == previous_stock + delta

Sign conventions by movement type:
    IN, RETURN          -> +quantity   (quantity entered as a magnitude)
    OUT                 -> -quantity   (quantity entered as a magnitude)
    ADJUSTMENT, TRANSFER -> quantity as given (signed)
"""
from dataclasses import dataclass

from django.db import models

from core.exceptions import InsufficientStockError, ValidationError


class MovementType(models.TextChoices):
    IN = 'IN', 'Stock In'
    OUT = 'OUT', 'Stock Out'
    ADJUSTMENT = 'ADJUSTMENT', 'Adjustment'
    RETURN = 'RETURN', 'Return'
    TRANSFER = 'TRANSFER', 'Transfer'


# Types an administrator can enter by hand
ADJUSTABLE_TYPES = frozenset({MovementType.IN, MovementType.OUT, MovementType.ADJUSTMENT})

_POSITIVE_TYPES = frozenset({MovementType.IN, MovementType.RETURN})
_NEGATIVE_TYPES = frozenset({MovementType.OUT})


@dataclass(frozen=True)
class StockChange:
    previous_stock: int
    delta: int
    new_stock: int


def effective_delta(movement_type: str, quantity: int) -> int:
    """Signed change to stock for a quantity entered under movement_type."""
    movement_type = MovementType(movement_type)
    if movement_type in _POSITIVE_TYPES:
        return quantity
    if movement_type in _NEGATIVE_TYPES:
        return -quantity
    return quantity


def validate_adjustment(movement_type: str, quantity: int, reason: str,
                        allowed_types=ADJUSTABLE_TYPES) -> None:
    """
    Check an adjustment request before any stock is read.

    Raises:
        ValidationError: unknown/unsupported type, zero quantity, negative
            magnitude for IN/OUT/RETURN, or an empty reason
    """
    try:
        movement_type = MovementType(movement_type)
    except ValueError:
        raise ValidationError(f"Unknown movement type: {movement_type}", field='type')
    if movement_type not in allowed_types:
        raise ValidationError(
            f"Movement type {movement_type} cannot be entered here", field='type'
        )

    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer", field='quantity')
    if quantity == 0:
        raise ValidationError("non-zero quantity required", field='quantity')
    if quantity < 0 and movement_type in (_POSITIVE_TYPES | _NEGATIVE_TYPES):
        raise ValidationError(
            f"quantity for {movement_type} must be a positive magnitude", field='quantity'
        )

    if not reason or not reason.strip():
        raise ValidationError("reason required", field='reason')


def compute_new_stock(previous_stock: int, delta: int, allow_negative: bool,
                      product_id=None) -> int:
    """
    Apply delta to previous_stock.

    Raises:
        InsufficientStockError: result below zero and negative stock not allowed
    """
    new_stock = previous_stock + delta
    if new_stock < 0 and not allow_negative:
        raise InsufficientStockError(product_id, previous_stock, delta)
    return new_stock


def plan_change(previous_stock: int, movement_type: str, quantity: int,
                allow_negative: bool, product_id=None) -> StockChange:
    delta = effective_delta(movement_type, quantity)
    new_stock = compute_new_stock(previous_stock, delta, allow_negative, product_id)
    return StockChange(previous_stock=previous_stock, delta=delta, new_stock=new_stock)
