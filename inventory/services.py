"""
Stock Service Layer - Transactional stock adjustments and inventory queries.

Every stock change follows the same unit of work:
1. Lock the product (or variant) row with select_for_update()
2. Read previous_stock from the locked row
3. Compute new_stock and refuse negatives unless the store allows them
4. Write the new stock_quantity and append a StockMovement

Steps 1-4 run in one transaction: either both writes land or neither does.
"""
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from django.db.models import Count, DecimalField, ExpressionWrapper, F, Q, Sum
from django.utils import timezone

from core.exceptions import NotFoundError, StorefrontError
from core.models import ProductSettings
from core.transactions import run_in_transaction
from .ledger import MovementType, compute_new_stock, plan_change, validate_adjustment
from .models import Product, ProductVariant, StockMovement

logger = logging.getLogger(__name__)

RECENT_MOVEMENT_DAYS = 7


def _lock_stock_rows(product_id, variant_id=None):
    """Lock and return (product, variant or None) for a stock change."""
    try:
        product = Product.objects.select_for_update().get(pk=product_id)
    except Product.DoesNotExist:
        raise NotFoundError('Product', product_id=product_id)

    variant = None
    if variant_id is not None:
        try:
            variant = ProductVariant.objects.select_for_update().get(
                pk=variant_id, product_id=product.pk
            )
        except ProductVariant.DoesNotExist:
            raise NotFoundError('Product variant', product_id=product_id, variant_id=variant_id)
    return product, variant


def _apply(product: Product, variant: Optional[ProductVariant], movement_type: str,
           quantity: int, reason: str, allow_negative: bool, actor=None,
           reference_type: str = '', reference_id: str = '') -> StockMovement:
    """
    Write the stock change for rows already locked by the caller.

    Variant movements track the variant's own quantity; the product total
    moves by the same delta.
    """
    holder = variant if variant is not None else product
    change = plan_change(
        holder.stock_quantity, movement_type, quantity, allow_negative,
        product_id=product.pk
    )

    if variant is not None:
        # The product total is guarded too; checked before either row is written
        product_total = product.stock_quantity + change.delta
        if change.delta < 0:
            product_total = compute_new_stock(
                product.stock_quantity, change.delta, allow_negative, product_id=product.pk
            )
        variant.stock_quantity = change.new_stock
        variant.save(update_fields=['stock_quantity', 'updated_at'])
        product.stock_quantity = product_total
    else:
        product.stock_quantity = change.new_stock
    product.in_stock = product.stock_quantity > 0
    product.save(update_fields=['stock_quantity', 'in_stock', 'updated_at'])

    movement = StockMovement.objects.create(
        product=product,
        variant=variant,
        type=movement_type,
        quantity=change.delta,
        previous_stock=change.previous_stock,
        new_stock=change.new_stock,
        reason=reason.strip(),
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id else '',
        created_by=actor if actor is not None and actor.is_authenticated else None,
    )

    logger.info(
        f"Stock movement #{movement.id} {movement_type} on product {product.pk}"
        f"{f' variant {variant.pk}' if variant else ''}: "
        f"{change.previous_stock} -> {change.new_stock} ({change.delta:+d}), reason: {reason}"
    )
    return movement


def adjust_stock(product_id, movement_type: str, quantity: int, reason: str,
                 variant_id=None, actor=None, reference_type: str = '',
                 reference_id: str = '', allow_negative: Optional[bool] = None) -> StockMovement:
    """
    Apply an administrator-entered stock change and record it.

    Args:
        product_id: Product to adjust
        movement_type: IN, OUT or ADJUSTMENT
        quantity: Magnitude for IN/OUT, signed delta for ADJUSTMENT
        reason: Free-text reason, required
        variant_id: Optional variant of the product to adjust
        actor: User performing the change
        allow_negative: Overrides ProductSettings.allow_negative_stock

    Returns:
        The created StockMovement

    Raises:
        ValidationError: zero quantity, missing reason, unsupported type
        NotFoundError: product or variant does not exist
        InsufficientStockError: result below zero and not allowed
        ConflictError: concurrent writer aborted the transaction
    """
    validate_adjustment(movement_type, quantity, reason)
    if allow_negative is None:
        allow_negative = ProductSettings.load().allow_negative_stock

    def unit():
        product, variant = _lock_stock_rows(product_id, variant_id)
        return _apply(
            product, variant, movement_type, quantity, reason, allow_negative,
            actor=actor, reference_type=reference_type, reference_id=reference_id,
        )

    try:
        return run_in_transaction(unit)
    except StorefrontError as e:
        logger.warning(f"Stock adjustment rejected for product {product_id}: {e}")
        raise


def record_order_movement(product: Product, variant: Optional[ProductVariant],
                          movement_type: str, quantity: int, reason: str,
                          order_id, allow_negative: bool, actor=None) -> StockMovement:
    """
    Record an order-triggered movement (OUT at checkout, RETURN on cancel).

    Must be called inside the caller's transaction with product and
    variant already locked.
    """
    validate_adjustment(
        movement_type, quantity, reason,
        allowed_types=frozenset({MovementType.OUT, MovementType.RETURN})
    )
    return _apply(
        product, variant, movement_type, quantity, reason, allow_negative,
        actor=actor, reference_type='order', reference_id=str(order_id),
    )


def lock_products(product_ids: List[int]) -> Dict[int, Product]:
    """Lock products in id order to keep lock acquisition deadlock-free."""
    return {
        p.id: p
        for p in Product.objects.select_for_update().filter(id__in=product_ids).order_by('id')
    }


def lock_variants(variant_ids: List[int]) -> Dict[int, ProductVariant]:
    return {
        v.id: v
        for v in ProductVariant.objects.select_for_update().filter(id__in=variant_ids).order_by('id')
    }


def movement_totals(product_id) -> int:
    """Sum of all recorded deltas for a product."""
    total = StockMovement.objects.filter(product_id=product_id).aggregate(
        total=Sum('quantity')
    )['total']
    return total or 0


def find_ledger_mismatches() -> List[Dict]:
    """
    Products whose stock_quantity differs from the sum of their movements.

    Products are created with zero stock, so the two must always agree.
    """
    mismatches = []
    products = Product.objects.annotate(
        delta_sum=Sum('stock_movements__quantity'),
        movement_count=Count('stock_movements'),
    )
    for product in products.iterator():
        expected = product.delta_sum or 0
        if product.stock_quantity != expected:
            mismatches.append({
                'product_id': product.id,
                'sku': product.sku,
                'stock_quantity': product.stock_quantity,
                'ledger_total': expected,
                'movement_count': product.movement_count,
            })
    return mismatches


def get_inventory_stats(low_stock_threshold: Optional[int] = None) -> Dict:
    """
    Aggregate inventory figures for the admin dashboard.

    low_stock_threshold defaults to ProductSettings.default_stock_threshold.
    Products with their own threshold use it instead.
    """
    if low_stock_threshold is None:
        low_stock_threshold = ProductSettings.load().default_stock_threshold

    products = Product.objects.all()
    stock_value = ExpressionWrapper(
        F('price') * F('stock_quantity'),
        output_field=DecimalField(max_digits=14, decimal_places=2)
    )

    totals = products.aggregate(
        total_products=Count('id'),
        total_stock_value=Sum(stock_value, filter=Q(stock_quantity__gt=0)),
    )
    low_stock_q = Q(stock_quantity__gt=0) & (
        Q(low_stock_threshold__isnull=True, stock_quantity__lte=low_stock_threshold)
        | Q(low_stock_threshold__isnull=False, stock_quantity__lte=F('low_stock_threshold'))
    )
    since = timezone.now() - timedelta(days=RECENT_MOVEMENT_DAYS)

    by_category = (
        products.values('category__name')
        .annotate(
            value=Sum(stock_value, filter=Q(stock_quantity__gt=0)),
            count=Count('id'),
        )
        .order_by('category__name')
    )

    return {
        'total_products': totals['total_products'],
        'total_stock_value': str(totals['total_stock_value'] or '0.00'),
        'low_stock_products': products.filter(low_stock_q).count(),
        'out_of_stock_products': products.filter(stock_quantity__lte=0).count(),
        'recent_movements': StockMovement.objects.filter(created_at__gte=since).count(),
        'low_stock_threshold': low_stock_threshold,
        'stock_value_by_category': [
            {
                'category': row['category__name'],
                'value': str(row['value'] or '0.00'),
                'count': row['count'],
            }
            for row in by_category
        ],
    }
