"""
Tests for order checkout and status management.

Test Cases:
1. Status flow: every (current, requested) pair, terminal statuses
2. Checkout deducts stock atomically, rejection leaves stock unchanged
3. Status updates restock cancelled/returned orders and keep an audit trail
4. Administrator override and its permission
5. Order API endpoints
6. Periodic tasks
7. Concurrent checkouts never oversell
"""
import threading
from datetime import timedelta
from decimal import Decimal
from itertools import product as pairs

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Permission
from django.db import connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, skipUnlessDBFeature
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from core.exceptions import (
    ConflictError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from inventory.ledger import MovementType
from inventory.models import Category, Product, ProductVariant, StockMovement
from inventory.services import adjust_stock, movement_totals
from orders.models import Order, OrderItem, OrderStatusHistory
from orders.services import calculate_totals, create_order, get_order_summary, update_order
from orders.status import (
    OrderStatus,
    TERMINAL_STATUSES,
    allowed_transitions,
    can_transition_order,
    validate_transition,
)
from orders.tasks import (
    cancel_stale_pending_orders,
    generate_daily_order_report,
    send_order_status_notification,
)

EXPECTED_FLOW = {
    'PENDING': {'CONFIRMED', 'CANCELLED'},
    'CONFIRMED': {'PROCESSING', 'CANCELLED'},
    'PROCESSING': {'SHIPPED', 'CANCELLED'},
    'SHIPPED': {'DELIVERED', 'RETURNED'},
    'DELIVERED': set(),
    'CANCELLED': set(),
    'RETURNED': set(),
}


def stocked_product(category, sku, price, stock):
    product = Product.objects.create(
        name=f'Product {sku}', slug=sku.lower(), sku=sku,
        price=Decimal(price), category=category
    )
    if stock:
        adjust_stock(product.id, MovementType.IN, stock, 'Opening stock')
        product.refresh_from_db()
    return product


class OrderStatusFlowTestCase(SimpleTestCase):

    def test_every_transition_pair(self):
        for current, requested in pairs(OrderStatus.values, repeat=2):
            expected = requested == current or requested in EXPECTED_FLOW[current]
            with self.subTest(current=current, requested=requested):
                self.assertEqual(can_transition_order(current, requested), expected)

    def test_terminal_statuses_allow_nothing(self):
        for status in TERMINAL_STATUSES:
            self.assertEqual(allowed_transitions(status), frozenset())

        self.assertEqual(
            {s.value for s in TERMINAL_STATUSES},
            {s for s, targets in EXPECTED_FLOW.items() if not targets}
        )

    def test_skipping_a_step_is_rejected(self):
        with self.assertRaises(InvalidTransitionError) as context:
            validate_transition('CONFIRMED', 'DELIVERED')

        self.assertEqual(
            str(context.exception), 'Cannot transition order from CONFIRMED to DELIVERED'
        )

    def test_force_reports_override(self):
        self.assertTrue(validate_transition('CONFIRMED', 'DELIVERED', force=True))
        self.assertFalse(validate_transition('CONFIRMED', 'PROCESSING', force=True))

    def test_unknown_status(self):
        with self.assertRaises(ValidationError):
            can_transition_order('PENDING', 'LOST')


class CalculateTotalsTestCase(SimpleTestCase):

    def test_small_order_pays_shipping(self):
        totals = calculate_totals(Decimal('100.00'))

        self.assertEqual(totals['shipping'], Decimal('50.00'))
        self.assertEqual(totals['tax'], Decimal('18.00'))
        self.assertEqual(totals['total'], Decimal('168.00'))

    def test_free_shipping_above_threshold(self):
        totals = calculate_totals(Decimal('1000.00'))

        self.assertEqual(totals['shipping'], Decimal('0.00'))
        self.assertEqual(totals['total'], Decimal('1180.00'))


class CreateOrderTestCase(TestCase):
    """Test cases for checkout stock deduction."""

    def setUp(self):
        self.category = Category.objects.create(name='Rings', slug='rings')
        self.product1 = stocked_product(self.category, 'RING-001', '100.00', 10)
        self.product2 = stocked_product(self.category, 'RING-002', '250.00', 5)
        self.product3 = stocked_product(self.category, 'RING-003', '40.00', 3)

    def test_order_created_pending_with_stock_deducted(self):
        """
        Test: Checkout with enough stock.

        Given: Products with sufficient stock
        When: Creating an order within stock limits
        Then: Order is PENDING, stock is deducted through OUT movements
        """
        items = [
            {'product_id': self.product1.id, 'quantity': 2},
            {'product_id': self.product2.id, 'quantity': 1},
        ]

        order = create_order(items, customer_name='Asha Rao', customer_email='asha@example.com')

        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(order.items.count(), 2)
        # 2*100 + 250 = 450, + 50 shipping + 81 tax
        self.assertEqual(order.subtotal, Decimal('450.00'))
        self.assertEqual(order.total, Decimal('581.00'))

        self.product1.refresh_from_db()
        self.product2.refresh_from_db()
        self.assertEqual(self.product1.stock_quantity, 8)
        self.assertEqual(self.product2.stock_quantity, 4)

        movements = StockMovement.objects.filter(reference_type='order', reference_id=str(order.id))
        self.assertEqual(movements.count(), 2)
        self.assertTrue(all(m.type == MovementType.OUT for m in movements))
        self.assertTrue(all(m.reason == f'Order #{order.id}' for m in movements))

    def test_insufficient_stock_rejects_whole_order(self):
        """
        Test: One short item rejects the order with nothing deducted.
        """
        items = [
            {'product_id': self.product1.id, 'quantity': 5},
            {'product_id': self.product3.id, 'quantity': 5},
        ]
        movement_count = StockMovement.objects.count()

        with self.assertRaises(InsufficientStockError) as context:
            create_order(items, customer_name='Asha Rao', customer_email='asha@example.com')

        self.assertEqual(context.exception.data['product_id'], self.product3.id)
        self.product1.refresh_from_db()
        self.product3.refresh_from_db()
        self.assertEqual(self.product1.stock_quantity, 10)
        self.assertEqual(self.product3.stock_quantity, 3)
        self.assertEqual(StockMovement.objects.count(), movement_count)
        self.assertFalse(Order.objects.exists())

    def test_order_with_exact_stock(self):
        create_order(
            [{'product_id': self.product3.id, 'quantity': 3}],
            customer_name='Asha Rao', customer_email='asha@example.com'
        )

        self.product3.refresh_from_db()
        self.assertEqual(self.product3.stock_quantity, 0)
        self.assertFalse(self.product3.in_stock)

    def test_variant_order_uses_variant_price_and_stock(self):
        variant = ProductVariant.objects.create(
            product=self.product1, name='Size 8', sku='RING-001-8',
            price_adjustment=Decimal('20.00')
        )
        adjust_stock(self.product1.id, MovementType.IN, 2, 'Size run', variant_id=variant.id)

        order = create_order(
            [{'product_id': self.product1.id, 'variant_id': variant.id, 'quantity': 2}],
            customer_name='Asha Rao', customer_email='asha@example.com'
        )

        item = order.items.get()
        self.assertEqual(item.unit_price, Decimal('120.00'))
        variant.refresh_from_db()
        self.product1.refresh_from_db()
        self.assertEqual(variant.stock_quantity, 0)
        self.assertEqual(self.product1.stock_quantity, 10)

    def test_variant_order_rejected_when_product_total_is_empty(self):
        variant = ProductVariant.objects.create(
            product=self.product1, name='Size 5', sku='RING-001-5'
        )
        adjust_stock(self.product1.id, MovementType.IN, 2, 'Size run', variant_id=variant.id)
        adjust_stock(self.product1.id, MovementType.OUT, 12, 'Bulk sale')

        with self.assertRaises(InsufficientStockError):
            create_order(
                [{'product_id': self.product1.id, 'variant_id': variant.id, 'quantity': 2}],
                customer_name='Asha Rao', customer_email='asha@example.com'
            )

        variant.refresh_from_db()
        self.product1.refresh_from_db()
        self.assertEqual(variant.stock_quantity, 2)
        self.assertEqual(self.product1.stock_quantity, 0)
        self.assertFalse(Order.objects.exists())

    def test_validation_error_empty_items(self):
        with self.assertRaises(ValidationError) as context:
            create_order([], customer_name='Asha Rao', customer_email='asha@example.com')

        self.assertIn('at least one item', str(context.exception))

    def test_validation_error_duplicate_products(self):
        items = [
            {'product_id': self.product1.id, 'quantity': 1},
            {'product_id': self.product1.id, 'quantity': 2},
        ]

        with self.assertRaises(ValidationError) as context:
            create_order(items, customer_name='Asha Rao', customer_email='asha@example.com')

        self.assertIn('duplicate', str(context.exception).lower())

    def test_inactive_product_rejected(self):
        Product.objects.filter(pk=self.product2.pk).update(is_active=False)

        with self.assertRaises(ValidationError):
            create_order(
                [{'product_id': self.product2.id, 'quantity': 1}],
                customer_name='Asha Rao', customer_email='asha@example.com'
            )

    def test_unknown_product_rejected(self):
        with self.assertRaises(ValidationError) as context:
            create_order(
                [{'product_id': 99999, 'quantity': 1}],
                customer_name='Asha Rao', customer_email='asha@example.com'
            )

        self.assertIn('not found', str(context.exception))

    def test_notification_queued_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            create_order(
                [{'product_id': self.product1.id, 'quantity': 1}],
                customer_name='Asha Rao', customer_email='asha@example.com'
            )

        self.assertEqual(len(callbacks), 1)


class UpdateOrderTestCase(TestCase):
    """Test cases for status and payment updates."""

    def setUp(self):
        self.category = Category.objects.create(name='Necklaces', slug='necklaces')
        self.product = stocked_product(self.category, 'NECK-001', '300.00', 5)
        self.order = create_order(
            [{'product_id': self.product.id, 'quantity': 2}],
            customer_name='Meera Iyer', customer_email='meera@example.com'
        )
        self.admin = get_user_model().objects.create_superuser(
            username='owner', password='secret', email='owner@example.com'
        )

    def test_walk_the_happy_path(self):
        for status in ('CONFIRMED', 'PROCESSING', 'SHIPPED', 'DELIVERED'):
            order = update_order(self.order.id, status=status)
            self.assertEqual(order.status, status)

        self.assertEqual(self.order.status_history.count(), 4)
        self.assertFalse(self.order.status_history.filter(forced=True).exists())

    def test_skip_to_delivered_is_rejected(self):
        """
        Test: PENDING -> CONFIRMED succeeds, CONFIRMED -> DELIVERED does not.
        """
        update_order(self.order.id, status='CONFIRMED')

        with self.assertRaises(InvalidTransitionError):
            update_order(self.order.id, status='DELIVERED')

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.CONFIRMED)
        self.assertEqual(self.order.status_history.count(), 1)

    def test_forced_transition_is_recorded(self):
        update_order(self.order.id, status='CONFIRMED')

        order = update_order(self.order.id, status='DELIVERED', force=True, actor=self.admin)

        self.assertEqual(order.status, OrderStatus.DELIVERED)
        entry = order.status_history.last()
        self.assertTrue(entry.forced)
        self.assertEqual(entry.actor, self.admin)
        self.assertEqual((entry.from_status, entry.to_status), ('CONFIRMED', 'DELIVERED'))

    def test_terminal_status_is_final(self):
        update_order(self.order.id, status='CANCELLED')

        for status in ('PENDING', 'CONFIRMED', 'SHIPPED'):
            with self.assertRaises(InvalidTransitionError):
                update_order(self.order.id, status=status)

    def test_cancel_restocks(self):
        update_order(self.order.id, status='CONFIRMED')
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 3)

        update_order(self.order.id, status='CANCELLED')

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 5)
        restock = StockMovement.objects.filter(product=self.product).first()
        self.assertEqual(restock.type, MovementType.RETURN)
        self.assertEqual(restock.quantity, 2)
        self.assertEqual(restock.reference_id, str(self.order.id))
        self.assertEqual(movement_totals(self.product.id), 5)

    def test_return_after_shipping_restocks(self):
        for status in ('CONFIRMED', 'PROCESSING', 'SHIPPED', 'RETURNED'):
            update_order(self.order.id, status=status)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 5)

    def test_forced_reopen_deducts_again(self):
        update_order(self.order.id, status='CANCELLED')

        update_order(self.order.id, status='CONFIRMED', force=True, actor=self.admin)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 3)

    def test_forced_reopen_without_stock_is_rejected(self):
        update_order(self.order.id, status='CANCELLED')
        adjust_stock(self.product.id, MovementType.OUT, 4, 'Sold in store')

        with self.assertRaises(InsufficientStockError):
            update_order(self.order.id, status='CONFIRMED', force=True, actor=self.admin)

        self.order.refresh_from_db()
        self.product.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.CANCELLED)
        self.assertEqual(self.product.stock_quantity, 1)

    def test_payment_status_only(self):
        order = update_order(self.order.id, payment_status='PAID')

        self.assertEqual(order.payment_status, 'PAID')
        self.assertEqual(order.status, OrderStatus.PENDING)
        entry = order.status_history.get()
        self.assertEqual((entry.from_payment_status, entry.to_payment_status), ('PENDING', 'PAID'))

    def test_same_status_is_a_no_op(self):
        order = update_order(self.order.id, status='PENDING')

        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertFalse(OrderStatusHistory.objects.exists())

    def test_nothing_requested(self):
        with self.assertRaises(ValidationError):
            update_order(self.order.id)

    def test_unknown_values(self):
        with self.assertRaises(ValidationError):
            update_order(self.order.id, status='LOST')
        with self.assertRaises(ValidationError):
            update_order(self.order.id, payment_status='MAYBE')

    def test_unknown_order(self):
        with self.assertRaises(NotFoundError):
            update_order(99999, status='CONFIRMED')

    def test_history_is_append_only(self):
        update_order(self.order.id, status='CONFIRMED')
        entry = OrderStatusHistory.objects.get()
        entry.note = 'rewritten'

        with self.assertRaises(ValueError):
            entry.save()

    def test_order_summary(self):
        summary = get_order_summary(self.order.id)

        self.assertEqual(summary['item_count'], 1)
        self.assertEqual(summary['items'][0]['category'], 'Necklaces')
        self.assertEqual(summary['total'], str(self.order.total))

    def test_item_subtotal(self):
        item = OrderItem.objects.get(order=self.order)

        self.assertEqual(item.subtotal, Decimal('600.00'))


class OrderAPITestCase(TestCase):
    """Test cases for the order endpoints."""

    def setUp(self):
        category = Category.objects.create(name='Earrings', slug='earrings')
        self.product = stocked_product(category, 'EAR-001', '80.00', 4)
        self.staff = get_user_model().objects.create_user(
            username='clerk', password='secret', is_staff=True
        )
        self.client = APIClient()
        self.client.force_authenticate(user=self.staff)

    def _create(self, quantity=1):
        return self.client.post(reverse('orders:order-list'), {
            'customer_name': 'Kavya Menon',
            'customer_email': 'kavya@example.com',
            'payment_method': 'razorpay',
            'items': [{'product_id': self.product.id, 'quantity': quantity}],
        }, format='json')

    def _detail(self, order_id):
        return reverse('orders:order-detail', args=[order_id])

    def _grant_force(self):
        self.staff.user_permissions.add(
            Permission.objects.get(codename='force_order_status', content_type__app_label='orders')
        )
        # Drop the cached permission set
        self.staff = get_user_model().objects.get(pk=self.staff.pk)
        self.client.force_authenticate(user=self.staff)

    def test_create_order(self):
        response = self._create(quantity=3)

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['status'], 'PENDING')
        self.assertEqual(response.data['payment_method'], 'razorpay')
        self.assertEqual(response.data['allowed_transitions'], ['CANCELLED', 'CONFIRMED'])
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 1)

    def test_create_order_insufficient_stock(self):
        response = self._create(quantity=5)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['error'], 'INSUFFICIENT_STOCK')
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 4)

    def test_status_update(self):
        order_id = self._create().data['id']

        response = self.client.patch(self._detail(order_id), {'status': 'CONFIRMED'}, format='json')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['status'], 'CONFIRMED')

    def test_invalid_transition_returns_409(self):
        order_id = self._create().data['id']
        self.client.patch(self._detail(order_id), {'status': 'CONFIRMED'}, format='json')

        response = self.client.patch(self._detail(order_id), {'status': 'DELIVERED'}, format='json')

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['error'], 'INVALID_TRANSITION')
        self.assertEqual(response.data['data']['current_status'], 'CONFIRMED')

    def test_force_requires_permission(self):
        order_id = self._create().data['id']

        response = self.client.patch(
            self._detail(order_id), {'status': 'DELIVERED', 'force': True}, format='json'
        )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(Order.objects.get(pk=order_id).status, OrderStatus.PENDING)

    def test_force_with_permission(self):
        order_id = self._create().data['id']
        self._grant_force()

        response = self.client.patch(
            self._detail(order_id), {'status': 'DELIVERED', 'force': True, 'note': 'Hand delivered'},
            format='json'
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['status'], 'DELIVERED')

        history = self.client.get(reverse('orders:order-history', args=[order_id]))
        self.assertEqual(history.status_code, 200)
        self.assertEqual(len(history.data), 1)
        self.assertTrue(history.data[0]['forced'])
        self.assertEqual(history.data[0]['actor'], 'clerk')
        self.assertEqual(history.data[0]['note'], 'Hand delivered')

    def test_unknown_status_value(self):
        order_id = self._create().data['id']

        response = self.client.patch(self._detail(order_id), {'status': 'LOST'}, format='json')

        self.assertEqual(response.status_code, 400)

    def test_unknown_order(self):
        response = self.client.patch(self._detail(99999), {'status': 'CONFIRMED'}, format='json')

        self.assertEqual(response.status_code, 404)

    def test_transitions_endpoint(self):
        order_id = self._create().data['id']

        response = self.client.get(reverse('orders:order-transitions', args=[order_id]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['allowed'], ['CANCELLED', 'CONFIRMED'])
        self.assertFalse(response.data['terminal'])
        self.assertIn('DELIVERED', response.data['override'])
        self.assertNotIn('PENDING', response.data['override'])

    def test_list_filtered_by_status(self):
        first = self._create().data['id']
        self._create()
        self.client.patch(self._detail(first), {'status': 'CANCELLED'}, format='json')

        response = self.client.get(reverse('orders:order-list'), {'status': 'cancelled'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['results'][0]['id'], first)

    def test_stats(self):
        first = self._create().data['id']
        self._create()
        self.client.patch(self._detail(first), {'status': 'CANCELLED'}, format='json')

        response = self.client.get(reverse('orders:order-stats'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['total_orders'], 2)
        self.assertEqual(response.data['cancelled_orders'], 1)
        self.assertEqual(response.data['pending_orders'], 1)
        # 80 + 50 shipping + 14.40 tax
        self.assertEqual(Decimal(response.data['total_revenue']), Decimal('144.40'))


class OrderTaskTestCase(TestCase):

    def setUp(self):
        category = Category.objects.create(name='Bangles', slug='bangles')
        self.product = stocked_product(category, 'BANG-001', '150.00', 6)
        self.order = create_order(
            [{'product_id': self.product.id, 'quantity': 2}],
            customer_name='Nila Das', customer_email='nila@example.com'
        )

    def test_stale_pending_orders_are_cancelled(self):
        Order.objects.filter(pk=self.order.pk).update(
            created_at=timezone.now() - timedelta(hours=72)
        )

        result = cancel_stale_pending_orders()

        self.assertEqual(result, {'found': 1, 'cancelled': 1})
        self.order.refresh_from_db()
        self.product.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.CANCELLED)
        self.assertEqual(self.product.stock_quantity, 6)

    def test_recent_pending_orders_are_kept(self):
        result = cancel_stale_pending_orders()

        self.assertEqual(result['found'], 0)

    def test_daily_report(self):
        Order.objects.filter(pk=self.order.pk).update(
            created_at=timezone.now() - timedelta(days=1)
        )

        report = generate_daily_order_report()

        self.assertEqual(report['total_orders'], 1)
        self.assertEqual(report['by_status']['PENDING'], 1)
        self.assertEqual(Decimal(report['revenue']), self.order.total)

    def test_notification(self):
        result = send_order_status_notification(self.order.id, None, 'PENDING')

        self.assertEqual(result['status'], 'success')

    def test_notification_skipped_when_status_moved_on(self):
        update_order(self.order.id, status='CONFIRMED')

        result = send_order_status_notification(self.order.id, 'PENDING', 'PENDING')

        self.assertEqual(result['status'], 'skipped')

    def test_notification_for_missing_order(self):
        result = send_order_status_notification(99999)

        self.assertEqual(result['status'], 'error')


@skipUnlessDBFeature('has_select_for_update')
class ConcurrentOrderTestCase(TransactionTestCase):
    """
    Concurrent checkouts against the same product.
    Needs a database with row locks (PostgreSQL), so SQLite skips it.
    """

    def setUp(self):
        category = Category.objects.create(name='Limited Edition', slug='limited-edition')
        self.product = stocked_product(category, 'LTD-001', '900.00', 10)

    def test_concurrent_orders_no_overselling(self):
        """
        Test: Two concurrent orders of 8 units against 10 in stock.

        Then: At most one succeeds and stock matches the ledger.
        """
        results = {}

        def place_order(key):
            try:
                create_order(
                    [{'product_id': self.product.id, 'quantity': 8}],
                    customer_name=key, customer_email=f'{key}@example.com'
                )
                results[key] = 'created'
            except (InsufficientStockError, ConflictError):
                results[key] = 'rejected'
            finally:
                connection.close()

        threads = [threading.Thread(target=place_order, args=(f'buyer{i}',)) for i in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.product.refresh_from_db()
        created = sum(1 for r in results.values() if r == 'created')

        self.assertLessEqual(created, 1)
        self.assertEqual(self.product.stock_quantity, 10 - 8 * created)
        self.assertEqual(movement_totals(self.product.id), self.product.stock_quantity)
        self.assertEqual(Order.objects.count(), created)
