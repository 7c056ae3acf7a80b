"""
Error taxonomy for back-office operations.

Every rejection raised by the order and stock services is a StorefrontError
with a machine-readable code, a human-readable message and context data.
Views turn them into structured responses with error_response().

Usage:
    try:
        adjust_stock(product.id, MovementType.OUT, 5, 'Sold at pop-up')
    except InsufficientStockError as e:
        print(e.code, e.data['previous_stock'])
"""
from decimal import Decimal
from typing import Any, Dict

from rest_framework import status
from rest_framework.response import Response


class StorefrontError(Exception):
    """Base class for all expected, caller-facing failures."""

    code = 'ERROR'
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'The request could not be processed'

    def __init__(self, message: str = '', **data: Any):
        self.message = message or self.default_message
        self.data = data
        super().__init__(self.message)

    def as_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        return {
            'error': self.code,
            'detail': self.message,
            'data': {
                k: str(v) if isinstance(v, Decimal) else v
                for k, v in self.data.items()
            },
        }


class ValidationError(StorefrontError):
    """Missing or invalid input (zero quantity, empty reason, unknown status)."""
    code = 'VALIDATION_ERROR'
    default_message = 'Invalid input'


class NotFoundError(StorefrontError):
    code = 'NOT_FOUND'
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str = 'Resource', **data: Any):
        super().__init__(f"{resource} not found", **data)


class InvalidTransitionError(StorefrontError):
    """Requested order status is not reachable from the current one."""
    code = 'INVALID_TRANSITION'
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, current_status: str, requested_status: str):
        super().__init__(
            f"Cannot transition order from {current_status} to {requested_status}",
            current_status=current_status,
            requested_status=requested_status,
        )


class InsufficientStockError(StorefrontError):
    """Raised when a movement would leave stock below zero."""
    code = 'INSUFFICIENT_STOCK'
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, product_id, previous_stock: int, requested_delta: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"available {previous_stock}, requested change {requested_delta}",
            product_id=product_id,
            previous_stock=previous_stock,
            requested_delta=requested_delta,
        )


class ConflictError(StorefrontError):
    """Concurrent modification detected by the database."""
    code = 'CONFLICT'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'The record was modified concurrently, please retry'


def error_response(exc: StorefrontError) -> Response:
    return Response(exc.as_dict(), status=exc.status_code)
