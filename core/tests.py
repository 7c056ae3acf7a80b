"""
Tests for shared back-office plumbing.

Test Cases:
1. Error payloads carry code, detail and context data
2. Lock contention maps to ConflictError, other database errors propagate
3. Product settings singleton and its API
4. Rate limiting of stock writes and autocomplete
"""
from decimal import Decimal
from unittest.mock import patch

import redis
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.db import OperationalError
from django.test import RequestFactory, TestCase, override_settings
from django.urls import reverse
from rest_framework.test import APIClient

from core.exceptions import (
    ConflictError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    error_response,
)
from core.models import ProductSettings
from core.rate_limiting import get_caller_id
from core.transactions import is_conflict, run_in_transaction
from inventory.models import Category, Product


class ErrorPayloadTestCase(TestCase):

    def test_insufficient_stock_payload(self):
        error = InsufficientStockError(7, 3, -5)

        payload = error.as_dict()

        self.assertEqual(payload['error'], 'INSUFFICIENT_STOCK')
        self.assertEqual(payload['data'], {
            'product_id': 7,
            'previous_stock': 3,
            'requested_delta': -5,
        })
        self.assertIn('available 3', payload['detail'])

    def test_invalid_transition_message(self):
        error = InvalidTransitionError('CONFIRMED', 'DELIVERED')

        self.assertEqual(str(error), 'Cannot transition order from CONFIRMED to DELIVERED')
        self.assertEqual(error.status_code, 409)

    def test_decimal_context_is_stringified(self):
        error = ValidationError('Bad price', price=Decimal('12.50'))

        self.assertEqual(error.as_dict()['data'], {'price': '12.50'})

    def test_status_codes(self):
        self.assertEqual(error_response(ValidationError()).status_code, 400)
        self.assertEqual(error_response(NotFoundError('Order', order_id=1)).status_code, 404)
        self.assertEqual(error_response(ConflictError()).status_code, 409)

    def test_default_message(self):
        self.assertEqual(ConflictError().message, 'The record was modified concurrently, please retry')


class RunInTransactionTestCase(TestCase):

    def test_returns_result(self):
        self.assertEqual(run_in_transaction(lambda a, b: a + b, 2, b=3), 5)

    def test_lock_contention_becomes_conflict(self):
        def unit():
            raise OperationalError('database is locked')

        with self.assertRaises(ConflictError):
            run_in_transaction(unit)

    def test_other_operational_errors_propagate(self):
        def unit():
            raise OperationalError('no such table: inventory_product')

        with self.assertRaises(OperationalError):
            run_in_transaction(unit)

    def test_conflict_markers(self):
        self.assertTrue(is_conflict(OperationalError('ERROR: deadlock detected')))
        self.assertTrue(is_conflict(OperationalError(
            'canceling statement due to statement timeout'
        )))
        self.assertFalse(is_conflict(OperationalError('connection refused')))


class ProductSettingsTestCase(TestCase):

    def test_load_uses_configured_defaults(self):
        with override_settings(ALLOW_NEGATIVE_STOCK=True, LOW_STOCK_THRESHOLD=4):
            product_settings = ProductSettings.load()

        self.assertTrue(product_settings.allow_negative_stock)
        self.assertEqual(product_settings.default_stock_threshold, 4)

    def test_single_row(self):
        first = ProductSettings.load()
        ProductSettings(allow_negative_stock=True, default_stock_threshold=2).save()

        self.assertEqual(ProductSettings.objects.count(), 1)
        self.assertEqual(first.pk, ProductSettings.SINGLETON_ID)
        self.assertTrue(ProductSettings.load().allow_negative_stock)

    def test_cannot_delete(self):
        with self.assertRaises(ValueError):
            ProductSettings.load().delete()


class ProductSettingsAPITestCase(TestCase):

    def setUp(self):
        self.admin = get_user_model().objects.create_user(
            username='manager', password='secret', is_staff=True
        )
        self.client = APIClient()
        self.client.force_authenticate(user=self.admin)
        self.url = reverse('core:product-settings')

    def test_get_settings(self):
        response = self.client.get(self.url)

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data['allow_negative_stock'])
        self.assertEqual(response.data['default_stock_threshold'], 10)

    def test_update_settings(self):
        response = self.client.patch(
            self.url, {'allow_negative_stock': True, 'default_stock_threshold': 3}, format='json'
        )

        self.assertEqual(response.status_code, 200)
        product_settings = ProductSettings.load()
        self.assertTrue(product_settings.allow_negative_stock)
        self.assertEqual(product_settings.default_stock_threshold, 3)

    def test_requires_staff(self):
        customer = get_user_model().objects.create_user(username='customer', password='secret')
        client = APIClient()
        client.force_authenticate(user=customer)

        response = client.get(self.url)

        self.assertEqual(response.status_code, 403)


class CallerIdTestCase(TestCase):

    def test_anonymous_caller_uses_forwarded_ip(self):
        request = RequestFactory().get('/', HTTP_X_FORWARDED_FOR='10.0.0.5, 172.16.0.1')
        request.user = AnonymousUser()

        self.assertEqual(get_caller_id(request), 'ip:10.0.0.5')

    def test_authenticated_caller_uses_user_id(self):
        user = get_user_model().objects.create_user(username='clerk', password='secret')
        request = RequestFactory().get('/')
        request.user = user

        self.assertEqual(get_caller_id(request), f'user:{user.pk}')


class HealthCheckTestCase(TestCase):

    @patch('config.urls.get_redis_client', return_value=None)
    def test_healthy_without_redis(self, _redis):
        response = self.client.get(reverse('health-check'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['database'], 'ok')
        self.assertEqual(response.json()['redis'], 'unavailable')


class FakePipeline:
    """INCR + TTL pipeline over an in-memory counter dict."""

    def __init__(self, client):
        self.client = client
        self.commands = []

    def incr(self, key):
        self.commands.append(('incr', key))

    def ttl(self, key):
        self.commands.append(('ttl', key))

    def execute(self):
        if self.client.fail:
            raise redis.ConnectionError('Connection reset by peer')
        results = []
        for command, key in self.commands:
            if command == 'incr':
                self.client.counts[key] = self.client.counts.get(key, 0) + 1
                results.append(self.client.counts[key])
            else:
                results.append(self.client.expiries.get(key, -1))
        self.commands = []
        return results


class FakeRedis:

    def __init__(self, fail=False):
        self.fail = fail
        self.counts = {}
        self.expiries = {}

    def pipeline(self):
        return FakePipeline(self)

    def expire(self, key, seconds):
        self.expiries[key] = seconds


class RateLimitTestCase(TestCase):
    """
    Stock movement writes allow 30 requests per minute per caller,
    autocomplete allows 20.
    """

    def setUp(self):
        self.admin = get_user_model().objects.create_user(
            username='stock-admin', password='secret', is_staff=True
        )
        self.client = APIClient()
        self.client.force_authenticate(user=self.admin)
        self.movements_url = reverse('inventory:movement-list')
        self.redis = FakeRedis()

        patchers = [
            patch('core.rate_limiting._limits_active', return_value=True),
            patch('core.rate_limiting.get_redis_client', side_effect=lambda: self.redis),
        ]
        for patcher in patchers:
            patcher.start()
            self.addCleanup(patcher.stop)

    def movement_key(self):
        return f'rate_limit:StockMovementListCreateView:user:{self.admin.pk}'

    def test_allowed_write_carries_limit_headers(self):
        """
        Given: A fresh window
        When: A stock movement is posted
        Then: The request is handled and the remaining allowance is reported
        """
        response = self.client.post(self.movements_url, {}, format='json')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response['X-RateLimit-Limit'], '30')
        self.assertEqual(response['X-RateLimit-Remaining'], '29')
        self.assertEqual(response['X-RateLimit-Reset'], '60')
        self.assertEqual(self.redis.expiries[self.movement_key()], 60)

    def test_write_over_limit_is_rejected(self):
        """
        Given: 30 movement writes already counted in this window
        When: Another stock movement is posted
        Then: 429 with Retry-After, and no movement is recorded
        """
        self.redis.counts[self.movement_key()] = 30
        self.redis.expiries[self.movement_key()] = 42
        category = Category.objects.create(name='Rings', slug='rings')
        product = Product.objects.create(
            name='Gold Band', slug='gold-band', sku='RING-700',
            price=Decimal('300.00'), category=category
        )

        response = self.client.post(self.movements_url, {
            'product_id': product.id,
            'type': 'IN',
            'quantity': 5,
            'reason': 'Restock',
        }, format='json')

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response['Retry-After'], '42')
        self.assertEqual(response['X-RateLimit-Remaining'], '0')
        self.assertEqual(response.json()['error'], 'RATE_LIMITED')
        self.assertEqual(response.json()['data'], {'retry_after': 42})
        product.refresh_from_db()
        self.assertEqual(product.stock_quantity, 0)

    def test_reads_are_not_counted(self):
        """
        Given: The movement write limit is already exhausted
        When: The movement list is read
        Then: The read succeeds and the counter is untouched
        """
        self.redis.counts[self.movement_key()] = 31

        response = self.client.get(self.movements_url)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.redis.counts, {self.movement_key(): 31})

    def test_redis_error_lets_write_through(self):
        """
        Given: Redis fails mid-request
        When: A stock movement is posted
        Then: The request is handled as if unlimited
        """
        self.redis.fail = True

        response = self.client.post(self.movements_url, {}, format='json')

        self.assertEqual(response.status_code, 400)
        self.assertNotIn('X-RateLimit-Limit', response)

    def test_autocomplete_over_limit_is_rejected(self):
        key = f'rate_limit:ProductAutocompleteView.get:user:{self.admin.pk}'
        self.redis.counts[key] = 20
        self.redis.expiries[key] = 15

        response = self.client.get(reverse('inventory:product-autocomplete'), {'q': 'gold'})

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response['Retry-After'], '15')
        self.assertEqual(response.data['error'], 'RATE_LIMITED')

    def test_autocomplete_within_limit(self):
        response = self.client.get(reverse('inventory:product-autocomplete'), {'q': 'gold'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['X-RateLimit-Remaining'], '19')
