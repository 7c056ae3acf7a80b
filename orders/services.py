"""
Order Service Layer - Checkout and administrative order updates.

Checkout (create_order):
1. Validate items structure
2. Lock product (and variant) rows with select_for_update(), in id order
3. Create the order in PENDING and record one OUT movement per item
4. Any item short on stock rolls the whole unit back, so nothing is deducted

Status updates (update_order):
1. Lock the order row
2. Check the requested status against ORDER_STATUS_FLOW, unless forced
3. Apply payment_status as given
4. Restock on entering CANCELLED/RETURNED, deduct again on a forced exit
5. Append an OrderStatusHistory row and notify after commit
"""
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

from core.exceptions import NotFoundError, StorefrontError, ValidationError
from core.models import ProductSettings
from core.transactions import on_commit, run_in_transaction
from inventory.ledger import MovementType
from inventory.services import lock_products, lock_variants, record_order_movement
from .models import Order, OrderItem, OrderStatusHistory
from .status import (
    RESTOCKED_STATUSES,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    to_status,
    validate_transition,
)

logger = logging.getLogger(__name__)

FREE_SHIPPING_ABOVE = Decimal('499.00')
FLAT_SHIPPING = Decimal('50.00')
TAX_RATE = Decimal('0.18')
CENT = Decimal('0.01')


def validate_order_items(items: List[Dict]) -> None:
    """
    Validate order items structure.

    Args:
        items: List of dicts with 'product_id', 'quantity' and optional 'variant_id'

    Raises:
        ValidationError: If validation fails
    """
    if not items:
        raise ValidationError("Order must contain at least one item", field='items')

    seen = set()
    for idx, item in enumerate(items):
        if 'product_id' not in item:
            raise ValidationError(f"Item {idx}: missing 'product_id'", field='items')
        if 'quantity' not in item:
            raise ValidationError(f"Item {idx}: missing 'quantity'", field='items')

        quantity = item['quantity']
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(f"Item {idx}: quantity must be a positive integer", field='items')

        key = (item['product_id'], item.get('variant_id'))
        if key in seen:
            raise ValidationError(f"Item {idx}: duplicate product_id {item['product_id']}", field='items')
        seen.add(key)


def calculate_totals(subtotal: Decimal) -> Dict[str, Decimal]:
    """Shipping is free above FREE_SHIPPING_ABOVE; tax is GST on the subtotal."""
    shipping = Decimal('0.00') if subtotal > FREE_SHIPPING_ABOVE else FLAT_SHIPPING
    tax = (subtotal * TAX_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    return {
        'subtotal': subtotal,
        'shipping': shipping,
        'tax': tax,
        'total': subtotal + shipping + tax,
    }


def _notify(order_id: int, from_status: Optional[str], to_status_value: str) -> None:
    try:
        from .tasks import send_order_status_notification
        send_order_status_notification.delay(order_id, from_status, to_status_value)
    except Exception as e:
        # Notification failures never undo a committed order change
        logger.error(f"Failed to queue notification for order #{order_id}: {e}")


def create_order(items: List[Dict], customer_name: str, customer_email: str,
                 payment_method: str = PaymentMethod.COD, payment_reference: str = '',
                 notes: str = '', actor=None) -> Order:
    """
    Create a PENDING order and deduct its stock atomically.

    Raises:
        ValidationError: malformed items, unknown/inactive products or variants
        InsufficientStockError: an item lacks stock; nothing is deducted
        ConflictError: concurrent writer aborted the transaction
    """
    validate_order_items(items)
    if not customer_name or not customer_email:
        raise ValidationError("customer_name and customer_email are required")
    if payment_method not in PaymentMethod.values:
        raise ValidationError(f"Unknown payment method: {payment_method}", field='payment_method')

    allow_negative = ProductSettings.load().allow_negative_stock

    def unit():
        product_ids = sorted({item['product_id'] for item in items})
        products = lock_products(product_ids)
        missing = [pid for pid in product_ids if pid not in products or not products[pid].is_active]
        if missing:
            raise ValidationError(f"Products not found or inactive: {missing}", field='items')

        variant_ids = sorted({item['variant_id'] for item in items if item.get('variant_id')})
        variants = lock_variants(variant_ids)
        for item in items:
            variant_id = item.get('variant_id')
            if not variant_id:
                continue
            variant = variants.get(variant_id)
            if variant is None or variant.product_id != item['product_id'] or not variant.is_active:
                raise ValidationError(
                    f"Variant {variant_id} not available for product {item['product_id']}",
                    field='items'
                )

        order = Order.objects.create(
            customer_name=customer_name,
            customer_email=customer_email,
            payment_method=payment_method,
            payment_reference=payment_reference,
            notes=notes,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
        )

        subtotal = Decimal('0.00')
        order_items = []
        for item in items:
            product = products[item['product_id']]
            variant = variants.get(item.get('variant_id')) if item.get('variant_id') else None
            unit_price = variant.price if variant else product.price

            record_order_movement(
                product, variant, MovementType.OUT, item['quantity'],
                f"Order #{order.id}", order.id, allow_negative, actor=actor
            )
            order_items.append(OrderItem(
                order=order,
                product=product,
                variant=variant,
                quantity=item['quantity'],
                unit_price=unit_price,
            ))
            subtotal += unit_price * item['quantity']

        OrderItem.objects.bulk_create(order_items)

        for field, value in calculate_totals(subtotal).items():
            setattr(order, field, value)
        order.save(update_fields=['subtotal', 'shipping', 'tax', 'total', 'updated_at'])

        on_commit(lambda: _notify(order.id, None, OrderStatus.PENDING.value))
        return order

    try:
        order = run_in_transaction(unit)
    except StorefrontError as e:
        logger.warning(f"Checkout rejected for {customer_email}: {e}")
        raise

    logger.info(f"Order #{order.id} created: {len(items)} items, total {order.total}")
    return order


def _move_order_stock(order: Order, movement_type: str, reason: str,
                      allow_negative: bool, actor=None) -> None:
    """Record one movement per order item; rows are locked here."""
    items = list(order.items.all())
    products = lock_products(sorted({i.product_id for i in items}))
    variants = lock_variants(sorted({i.variant_id for i in items if i.variant_id}))
    for item in items:
        record_order_movement(
            products[item.product_id],
            variants.get(item.variant_id) if item.variant_id else None,
            movement_type, item.quantity, reason, order.id, allow_negative, actor=actor
        )


def update_order(order_id: int, status: Optional[str] = None,
                 payment_status: Optional[str] = None, force: bool = False,
                 actor=None, note: str = '') -> Order:
    """
    Change an order's status and/or payment status.

    A request that changes nothing returns the order untouched.

    Args:
        force: Administrator override; skips the status flow check.
            Permission to use it is checked by the caller.

    Raises:
        ValidationError: nothing requested or unknown status values
        NotFoundError: order does not exist
        InvalidTransitionError: status change outside the flow and not forced
        InsufficientStockError: forced exit from CANCELLED/RETURNED lacks stock
        ConflictError: concurrent writer aborted the transaction
    """
    if status is None and payment_status is None:
        raise ValidationError("status or payment_status is required")
    requested = to_status(status) if status is not None else None
    if payment_status is not None and payment_status not in PaymentStatus.values:
        raise ValidationError(f"Unknown payment status: {payment_status}", field='payment_status')

    def unit():
        try:
            order = Order.objects.select_for_update().get(pk=order_id)
        except Order.DoesNotExist:
            raise NotFoundError('Order', order_id=order_id)

        current = OrderStatus(order.status)
        target = requested or current
        forced = validate_transition(current, target, force)
        new_payment = payment_status or order.payment_status

        if target == current and new_payment == order.payment_status:
            return order

        if target != current:
            entering_restock = target in RESTOCKED_STATUSES and current not in RESTOCKED_STATUSES
            leaving_restock = current in RESTOCKED_STATUSES and target not in RESTOCKED_STATUSES
            if entering_restock:
                _move_order_stock(
                    order, MovementType.RETURN, f"Order #{order.id} {target.label.lower()}",
                    allow_negative=True, actor=actor
                )
            elif leaving_restock:
                _move_order_stock(
                    order, MovementType.OUT, f"Order #{order.id} reinstated as {target.value}",
                    allow_negative=ProductSettings.load().allow_negative_stock, actor=actor
                )

        OrderStatusHistory.objects.create(
            order=order,
            from_status=current,
            to_status=target,
            from_payment_status=order.payment_status,
            to_payment_status=new_payment,
            forced=forced,
            actor=actor if actor is not None and actor.is_authenticated else None,
            note=note,
        )

        if forced:
            logger.warning(
                f"Order #{order.id} status overridden by {actor}: {current} -> {target}"
            )
        elif target != current:
            logger.info(f"Order #{order.id} status {current} -> {target}")
        if new_payment != order.payment_status:
            logger.info(f"Order #{order.id} payment status {order.payment_status} -> {new_payment}")

        order.status = target
        order.payment_status = new_payment
        order.save(update_fields=['status', 'payment_status', 'updated_at'])

        if target != current:
            on_commit(lambda: _notify(order.id, current.value, target.value))
        return order

    try:
        return run_in_transaction(unit)
    except StorefrontError as e:
        logger.warning(f"Update of order #{order_id} rejected: {e}")
        raise


def get_order_summary(order_id: int) -> Dict:
    """
    Get detailed order summary with optimized queries.

    Uses prefetch_related to minimize database hits.
    """
    try:
        order = Order.objects.prefetch_related(
            'items__product__category', 'items__variant'
        ).get(id=order_id)
    except Order.DoesNotExist:
        raise NotFoundError('Order', order_id=order_id)

    items = list(order.items.all())
    return {
        'id': order.id,
        'customer': {'name': order.customer_name, 'email': order.customer_email},
        'status': order.status,
        'payment_status': order.payment_status,
        'payment_method': order.payment_method,
        'subtotal': str(order.subtotal),
        'shipping': str(order.shipping),
        'tax': str(order.tax),
        'total': str(order.total),
        'item_count': len(items),
        'items': [
            {
                'product_id': item.product.id,
                'product_name': item.product.name,
                'variant': item.variant.name if item.variant else None,
                'category': item.product.category.name,
                'quantity': item.quantity,
                'unit_price': str(item.unit_price),
                'subtotal': str(item.subtotal)
            }
            for item in items
        ],
        'created_at': order.created_at.isoformat(),
        'updated_at': order.updated_at.isoformat()
    }
