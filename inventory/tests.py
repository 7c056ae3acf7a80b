"""
Tests for the stock movement ledger.

Test Cases:
1. Stock arithmetic and adjustment validation
2. Adjustments update stock and record a balanced movement atomically
3. Rejected adjustments leave stock and the ledger untouched
4. Movements cannot be edited or deleted
5. Stock API, product API and inventory statistics
6. Ledger consistency command
7. Concurrent adjustments never oversell
"""
import threading
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.db import connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, skipUnlessDBFeature
from django.urls import reverse
from rest_framework.test import APIClient

from core.exceptions import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from core.models import ProductSettings
from inventory.ledger import (
    MovementType,
    compute_new_stock,
    effective_delta,
    plan_change,
    validate_adjustment,
)
from inventory.models import Category, Product, ProductVariant, StockMovement
from inventory.services import (
    adjust_stock,
    find_ledger_mismatches,
    get_inventory_stats,
    movement_totals,
)


def make_product(category, sku, price='100.00', stock=0, **extra):
    """Create a product and bring it to `stock` through the ledger."""
    name = extra.pop('name', f'Product {sku}')
    product = Product.objects.create(
        name=name,
        slug=sku.lower(),
        sku=sku,
        price=Decimal(price),
        category=category,
        **extra
    )
    if stock:
        adjust_stock(product.id, MovementType.IN, stock, 'Opening stock')
        product.refresh_from_db()
    return product


class LedgerArithmeticTestCase(SimpleTestCase):

    def test_effective_delta_signs(self):
        self.assertEqual(effective_delta(MovementType.IN, 4), 4)
        self.assertEqual(effective_delta(MovementType.RETURN, 2), 2)
        self.assertEqual(effective_delta(MovementType.OUT, 5), -5)
        self.assertEqual(effective_delta(MovementType.ADJUSTMENT, -2), -2)
        self.assertEqual(effective_delta(MovementType.TRANSFER, 3), 3)

    def test_compute_new_stock_refuses_negative(self):
        with self.assertRaises(InsufficientStockError) as context:
            compute_new_stock(3, -5, allow_negative=False, product_id=9)

        self.assertEqual(context.exception.data['previous_stock'], 3)
        self.assertEqual(context.exception.data['requested_delta'], -5)

    def test_compute_new_stock_allows_negative_when_enabled(self):
        self.assertEqual(compute_new_stock(3, -5, allow_negative=True), -2)

    def test_plan_change_balances(self):
        change = plan_change(5, MovementType.ADJUSTMENT, -2, allow_negative=False)

        self.assertEqual((change.previous_stock, change.delta, change.new_stock), (5, -2, 3))

    def test_validate_rejects_zero_quantity(self):
        with self.assertRaises(ValidationError) as context:
            validate_adjustment(MovementType.ADJUSTMENT, 0, 'recount')

        self.assertEqual(str(context.exception), 'non-zero quantity required')

    def test_validate_rejects_blank_reason(self):
        for reason in ('', '   ', None):
            with self.assertRaises(ValidationError) as context:
                validate_adjustment(MovementType.IN, 3, reason)
            self.assertEqual(str(context.exception), 'reason required')

    def test_validate_rejects_negative_magnitude(self):
        with self.assertRaises(ValidationError):
            validate_adjustment(MovementType.OUT, -3, 'sold')

    def test_validate_rejects_order_only_types(self):
        with self.assertRaises(ValidationError):
            validate_adjustment(MovementType.RETURN, 1, 'customer return')

    def test_validate_rejects_unknown_type(self):
        with self.assertRaises(ValidationError):
            validate_adjustment('SHRINKAGE', 1, 'lost')


class AdjustStockTestCase(TestCase):
    """Test cases for transactional stock adjustments."""

    def setUp(self):
        self.category = Category.objects.create(name='Rings', slug='rings')
        self.product = make_product(self.category, 'RING-001')
        self.user = get_user_model().objects.create_user(
            username='stockist', password='secret', is_staff=True
        )

    def test_stock_in_from_zero(self):
        """
        Test: Receiving stock on an empty product.

        Given: Product with 0 units
        When: Recording IN 10
        Then: Stock is 10 and one movement 0 -> 10 exists
        """
        movement = adjust_stock(self.product.id, MovementType.IN, 10, 'Supplier delivery', actor=self.user)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 10)
        self.assertTrue(self.product.in_stock)
        self.assertEqual(movement.previous_stock, 0)
        self.assertEqual(movement.new_stock, 10)
        self.assertEqual(movement.quantity, 10)
        self.assertEqual(movement.created_by, self.user)

    def test_stock_out_beyond_available_is_rejected(self):
        """
        Test: OUT 5 on a product holding 3 fails without side effects.
        """
        adjust_stock(self.product.id, MovementType.IN, 3, 'Supplier delivery')
        count_before = StockMovement.objects.count()

        with self.assertRaises(InsufficientStockError):
            adjust_stock(self.product.id, MovementType.OUT, 5, 'Wholesale order')

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 3)
        self.assertEqual(StockMovement.objects.count(), count_before)

    def test_negative_adjustment(self):
        """
        Test: ADJUSTMENT -2 'damaged' takes 5 down to 3.
        """
        adjust_stock(self.product.id, MovementType.IN, 5, 'Supplier delivery')

        movement = adjust_stock(self.product.id, MovementType.ADJUSTMENT, -2, 'damaged')

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 3)
        self.assertEqual(movement.type, MovementType.ADJUSTMENT)
        self.assertEqual(movement.quantity, -2)
        self.assertEqual(movement.previous_stock, 5)
        self.assertEqual(movement.new_stock, 3)
        self.assertEqual(movement.reason, 'damaged')

    def test_stock_out_to_exactly_zero(self):
        adjust_stock(self.product.id, MovementType.IN, 4, 'Supplier delivery')

        adjust_stock(self.product.id, MovementType.OUT, 4, 'Exhibition loan')

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 0)
        self.assertFalse(self.product.in_stock)

    def test_zero_quantity_creates_nothing(self):
        with self.assertRaises(ValidationError):
            adjust_stock(self.product.id, MovementType.ADJUSTMENT, 0, 'recount')

        self.assertFalse(StockMovement.objects.exists())

    def test_empty_reason_creates_nothing(self):
        with self.assertRaises(ValidationError):
            adjust_stock(self.product.id, MovementType.IN, 2, '')

        self.assertFalse(StockMovement.objects.exists())

    def test_unknown_product(self):
        with self.assertRaises(NotFoundError):
            adjust_stock(99999, MovementType.IN, 2, 'Supplier delivery')

    def test_negative_stock_when_store_allows_it(self):
        product_settings = ProductSettings.load()
        product_settings.allow_negative_stock = True
        product_settings.save()
        adjust_stock(self.product.id, MovementType.IN, 3, 'Supplier delivery')

        movement = adjust_stock(self.product.id, MovementType.OUT, 5, 'Backorder')

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, -2)
        self.assertEqual(movement.new_stock, -2)
        self.assertFalse(self.product.in_stock)

    def test_explicit_allow_negative_overrides_settings(self):
        movement = adjust_stock(
            self.product.id, MovementType.OUT, 1, 'Backorder', allow_negative=True
        )

        self.assertEqual(movement.new_stock, -1)

    def test_variant_stock_moves_product_total(self):
        variant = ProductVariant.objects.create(
            product=self.product, name='Size 7', sku='RING-001-7', price_adjustment=Decimal('15.00')
        )

        movement = adjust_stock(
            self.product.id, MovementType.IN, 4, 'Size run', variant_id=variant.id
        )

        variant.refresh_from_db()
        self.product.refresh_from_db()
        self.assertEqual(variant.stock_quantity, 4)
        self.assertEqual(self.product.stock_quantity, 4)
        self.assertEqual(movement.variant, variant)
        self.assertEqual(variant.price, Decimal('115.00'))

    def test_variant_of_other_product_is_not_found(self):
        other = make_product(self.category, 'RING-002')
        variant = ProductVariant.objects.create(product=other, name='Size 6', sku='RING-002-6')

        with self.assertRaises(NotFoundError):
            adjust_stock(self.product.id, MovementType.IN, 1, 'Size run', variant_id=variant.id)

    def test_variant_out_cannot_take_product_total_negative(self):
        """
        Test: Variant stock alone does not pass the stock floor.

        Given: Variant holding 5, product total drained to 0 by a product-level OUT
        When: Recording OUT 5 on the variant
        Then: InsufficientStockError, neither row nor the ledger changes
        """
        variant = ProductVariant.objects.create(product=self.product, name='Size 9', sku='RING-001-9')
        adjust_stock(self.product.id, MovementType.IN, 5, 'Size run', variant_id=variant.id)
        adjust_stock(self.product.id, MovementType.OUT, 5, 'Sold unsized')
        count_before = StockMovement.objects.count()

        with self.assertRaises(InsufficientStockError):
            adjust_stock(self.product.id, MovementType.OUT, 5, 'Sold', variant_id=variant.id)

        variant.refresh_from_db()
        self.product.refresh_from_db()
        self.assertEqual(variant.stock_quantity, 5)
        self.assertEqual(self.product.stock_quantity, 0)
        self.assertEqual(StockMovement.objects.count(), count_before)

    def test_variant_in_allowed_while_product_total_negative(self):
        adjust_stock(self.product.id, MovementType.OUT, 2, 'Backorder', allow_negative=True)
        variant = ProductVariant.objects.create(product=self.product, name='Size 5', sku='RING-001-5')

        adjust_stock(self.product.id, MovementType.IN, 1, 'Size run', variant_id=variant.id)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, -1)

    def test_ledger_sum_matches_stock(self):
        """
        Test: Sum of recorded deltas equals the current stock.
        """
        adjust_stock(self.product.id, MovementType.IN, 10, 'Supplier delivery')
        adjust_stock(self.product.id, MovementType.OUT, 3, 'Pop-up sale')
        adjust_stock(self.product.id, MovementType.ADJUSTMENT, -1, 'damaged')
        adjust_stock(self.product.id, MovementType.ADJUSTMENT, 2, 'found in safe')

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 8)
        self.assertEqual(movement_totals(self.product.id), 8)

        latest = StockMovement.objects.filter(product=self.product).first()
        self.assertEqual(latest.new_stock, self.product.stock_quantity)
        for movement in StockMovement.objects.filter(product=self.product):
            self.assertEqual(movement.new_stock, movement.previous_stock + movement.quantity)


class StockMovementImmutabilityTestCase(TestCase):

    def setUp(self):
        category = Category.objects.create(name='Necklaces', slug='necklaces')
        self.product = make_product(category, 'NECK-001', stock=5)
        self.movement = StockMovement.objects.get(product=self.product)

    def test_cannot_update(self):
        self.movement.reason = 'rewritten'

        with self.assertRaises(ValueError):
            self.movement.save()

    def test_cannot_delete(self):
        with self.assertRaises(ValueError):
            self.movement.delete()

        self.assertTrue(StockMovement.objects.filter(pk=self.movement.pk).exists())

    def test_unbalanced_movement_is_refused(self):
        with self.assertRaises(ValueError):
            StockMovement.objects.create(
                product=self.product,
                type=MovementType.ADJUSTMENT,
                quantity=2,
                previous_stock=5,
                new_stock=9,
                reason='bad arithmetic',
            )


class InventoryStatsTestCase(TestCase):

    def setUp(self):
        rings = Category.objects.create(name='Rings', slug='rings')
        earrings = Category.objects.create(name='Earrings', slug='earrings')
        make_product(rings, 'RING-001', price='100.00', stock=3)
        make_product(rings, 'RING-002', price='250.00', stock=20)
        make_product(earrings, 'EAR-001', price='40.00', stock=0)
        make_product(earrings, 'EAR-002', price='60.00', stock=8, low_stock_threshold=5)

    def test_stats(self):
        stats = get_inventory_stats()

        self.assertEqual(stats['total_products'], 4)
        # 3*100 + 20*250 + 8*60
        self.assertEqual(Decimal(stats['total_stock_value']), Decimal('5780.00'))
        # RING-001 only: EAR-002 has its own threshold of 5
        self.assertEqual(stats['low_stock_products'], 1)
        self.assertEqual(stats['out_of_stock_products'], 1)
        self.assertEqual(stats['recent_movements'], 3)
        self.assertEqual(stats['low_stock_threshold'], 10)

        by_category = {row['category']: row for row in stats['stock_value_by_category']}
        self.assertEqual(Decimal(by_category['Rings']['value']), Decimal('5300.00'))
        self.assertEqual(by_category['Earrings']['count'], 2)

    def test_threshold_override(self):
        stats = get_inventory_stats(low_stock_threshold=2)

        self.assertEqual(stats['low_stock_products'], 0)

    def test_low_stock_helper(self):
        product = Product.objects.get(sku='EAR-002')

        self.assertFalse(product.is_low_stock(10))
        self.assertTrue(Product.objects.get(sku='RING-001').is_low_stock(10))
        self.assertTrue(Product.objects.get(sku='EAR-001').is_out_of_stock)


class StockAPITestCase(TestCase):
    """Test cases for the stock and product endpoints."""

    def setUp(self):
        self.category = Category.objects.create(name='Bracelets', slug='bracelets')
        self.product = make_product(self.category, 'BRAC-001', price='75.00', stock=3)
        self.admin = get_user_model().objects.create_user(
            username='admin', password='secret', is_staff=True
        )
        self.client = APIClient()
        self.client.force_authenticate(user=self.admin)
        self.movements_url = reverse('inventory:movement-list')

    def test_adjustment_via_api(self):
        response = self.client.post(self.movements_url, {
            'product_id': self.product.id,
            'type': 'IN',
            'quantity': 7,
            'reason': 'Supplier delivery',
        }, format='json')

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['product']['stock_quantity'], 10)
        self.assertEqual(response.data['movement']['previous_stock'], 3)
        self.assertEqual(response.data['movement']['new_stock'], 10)
        self.assertEqual(response.data['movement']['created_by'], 'admin')

    def test_insufficient_stock_via_api(self):
        response = self.client.post(self.movements_url, {
            'product_id': self.product.id,
            'type': 'OUT',
            'quantity': 5,
            'reason': 'Wholesale order',
        }, format='json')

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['error'], 'INSUFFICIENT_STOCK')
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 3)

    def test_zero_quantity_via_api(self):
        response = self.client.post(self.movements_url, {
            'product_id': self.product.id,
            'quantity': 0,
            'reason': 'recount',
        }, format='json')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['detail'], 'non-zero quantity required')

    def test_blank_reason_via_api(self):
        response = self.client.post(self.movements_url, {
            'product_id': self.product.id,
            'type': 'ADJUSTMENT',
            'quantity': -1,
            'reason': '',
        }, format='json')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['detail'], 'reason required')

    def test_unknown_product_via_api(self):
        response = self.client.post(self.movements_url, {
            'product_id': 99999,
            'type': 'IN',
            'quantity': 1,
            'reason': 'Supplier delivery',
        }, format='json')

        self.assertEqual(response.status_code, 404)

    def test_list_movements_filtered_by_type(self):
        adjust_stock(self.product.id, MovementType.OUT, 1, 'Pop-up sale')

        response = self.client.get(self.movements_url, {'type': 'out'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['results'][0]['quantity'], -1)

    def test_movement_detail_is_read_only(self):
        movement = StockMovement.objects.get(product=self.product)
        url = reverse('inventory:movement-detail', args=[movement.id])

        self.assertEqual(self.client.get(url).status_code, 200)
        self.assertEqual(self.client.delete(url).status_code, 405)

    def test_create_product_with_initial_stock(self):
        response = self.client.post(reverse('inventory:product-list'), {
            'name': 'Pearl Drop Earrings',
            'sku': 'EAR-100',
            'price': '120.00',
            'category_id': self.category.id,
            'initial_stock': 6,
        }, format='json')

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['stock_quantity'], 6)
        movement = StockMovement.objects.get(product_id=response.data['id'])
        self.assertEqual(movement.reason, 'Initial stock')
        self.assertEqual(movement.type, MovementType.IN)

    def test_failed_initial_stock_leaves_no_product(self):
        """
        Given: Recording the opening stock fails with a lock conflict
        When: A product is created with initial_stock
        Then: 409 is returned and neither the product nor a movement is saved
        """
        with patch('inventory.views.adjust_stock', side_effect=ConflictError()):
            response = self.client.post(reverse('inventory:product-list'), {
                'name': 'Opal Pendant',
                'sku': 'PEN-300',
                'price': '210.00',
                'category_id': self.category.id,
                'initial_stock': 4,
            }, format='json')

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['error'], 'CONFLICT')
        self.assertFalse(Product.objects.filter(sku='PEN-300').exists())
        self.assertFalse(StockMovement.objects.filter(product__sku='PEN-300').exists())

    def test_stock_quantity_not_writable(self):
        url = reverse('inventory:product-detail', args=[self.product.id])

        response = self.client.patch(url, {'stock_quantity': 500}, format='json')

        self.assertEqual(response.status_code, 200)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 3)

    def test_delete_product_deactivates(self):
        url = reverse('inventory:product-detail', args=[self.product.id])

        response = self.client.delete(url)

        self.assertEqual(response.status_code, 204)
        self.product.refresh_from_db()
        self.assertFalse(self.product.is_active)
        self.assertTrue(StockMovement.objects.filter(product=self.product).exists())

    def test_inventory_table_low_stock_filter(self):
        make_product(self.category, 'BRAC-002', stock=50)

        response = self.client.get(reverse('inventory:inventory-products'), {'low_stock': 'true'})

        self.assertEqual(response.status_code, 200)
        skus = [row['sku'] for row in response.data['results']]
        self.assertEqual(skus, ['BRAC-001'])
        self.assertEqual(response.data['results'][0]['total_movements'], 1)

    def test_stats_endpoint(self):
        response = self.client.get(reverse('inventory:inventory-stats'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['total_products'], 1)
        self.assertEqual(Decimal(response.data['total_stock_value']), Decimal('225.00'))

    def test_requires_staff(self):
        client = APIClient()

        response = client.get(self.movements_url)

        self.assertIn(response.status_code, (401, 403))


class CheckStockLedgerCommandTestCase(TestCase):

    def setUp(self):
        category = Category.objects.create(name='Anklets', slug='anklets')
        self.product = make_product(category, 'ANK-001', stock=4)

    def test_consistent_ledger(self):
        out = StringIO()

        call_command('check_stock_ledger', stdout=out)

        self.assertIn('consistent', out.getvalue())
        self.assertEqual(find_ledger_mismatches(), [])

    def test_mismatch_reported(self):
        # Bypasses the service layer on purpose
        Product.objects.filter(pk=self.product.pk).update(stock_quantity=9)

        mismatches = find_ledger_mismatches()
        self.assertEqual(len(mismatches), 1)
        self.assertEqual(mismatches[0]['ledger_total'], 4)

        with self.assertRaises(CommandError):
            call_command('check_stock_ledger', '--fail', stdout=StringIO())


class SeedDataCommandTestCase(TestCase):

    def test_seeded_stock_is_on_the_ledger(self):
        call_command('seed_data', '--products', '12', '--max-stock', '9', stdout=StringIO())

        self.assertEqual(Product.objects.count(), 12)
        self.assertEqual(find_ledger_mismatches(), [])
        for variant in ProductVariant.objects.all():
            self.assertEqual(
                variant.stock_quantity,
                sum(StockMovement.objects.filter(variant=variant).values_list('quantity', flat=True))
            )

    def test_clear_refuses_when_ledger_has_entries(self):
        category = Category.objects.create(name='Rings', slug='rings')
        make_product(category, 'RING-900', stock=1)

        with self.assertRaises(CommandError):
            call_command('seed_data', '--clear', stdout=StringIO())


@skipUnlessDBFeature('has_select_for_update')
class ConcurrentStockAdjustmentTestCase(TransactionTestCase):
    """
    Row locks serialize competing adjustments on one product.

    SQLite has no SELECT ... FOR UPDATE, so this runs on PostgreSQL only.
    """

    def test_concurrent_outs_never_go_below_zero(self):
        """
        Given: A product with 10 in stock
        When: Two threads each take out 8 at the same time
        Then: At most one succeeds and stock matches the ledger
        """
        category = Category.objects.create(name='Rings', slug='rings')
        product = make_product(category, 'RING-500', stock=10)
        results = []
        lock = threading.Lock()

        def take_out():
            try:
                adjust_stock(product.id, MovementType.OUT, 8, 'Wholesale order')
                outcome = 'ok'
            except (InsufficientStockError, ConflictError):
                outcome = 'rejected'
            finally:
                connection.close()
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=take_out) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        succeeded = results.count('ok')
        product.refresh_from_db()
        self.assertEqual(len(results), 2)
        self.assertLessEqual(succeeded, 1)
        self.assertEqual(product.stock_quantity, 10 - 8 * succeeded)
        self.assertEqual(product.stock_quantity, movement_totals(product.id))
        self.assertGreaterEqual(product.stock_quantity, 0)
