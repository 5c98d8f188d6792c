"""
Tests for the catalog: store bindings, permissions, search, autocomplete
and the Redis rate limiter.
"""
from decimal import Decimal
from unittest.mock import MagicMock, patch

import redis
from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.test import TestCase, override_settings
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient

from catalog.models import Category, Product, Store, StoreProduct
from core import rate_limiting

User = get_user_model()


class StoreProductModelTestCase(TestCase):
    """Test store binding constraints."""

    def setUp(self):
        self.category = Category.objects.create(name='Pain Relief')
        self.product = Product.objects.create(
            name='Aspirin 100mg', price=Decimal('4.00'), category=self.category
        )
        self.store = Store.objects.create(name='Pharmacie Nord', location='Behoririka')

    def test_has_valid_price(self):
        binding = StoreProduct(store=self.store, product=self.product, price=Decimal('4.50'))
        self.assertTrue(binding.has_valid_price)

        binding.price = Decimal('0.00')
        self.assertFalse(binding.has_valid_price)

        binding.price = None
        self.assertFalse(binding.has_valid_price)

    def test_one_binding_per_store_and_product(self):
        StoreProduct.objects.create(store=self.store, product=self.product, price=Decimal('4.50'))

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                StoreProduct.objects.create(store=self.store, product=self.product, price=Decimal('5.00'))

    def test_store_owners(self):
        owner = User.objects.create_user(username='owner', password='pass')
        self.store.owners.add(owner)

        self.assertEqual(list(owner.owned_stores.all()), [self.store])


@override_settings(RATE_LIMIT_ENABLED=False)
class CatalogAPITestCase(TestCase):
    """Test catalog endpoints."""

    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(username='customer', password='pass')
        self.staff = User.objects.create_user(username='staff', password='pass', is_staff=True)

        self.pain = Category.objects.create(name='Pain Relief')
        self.vitamins = Category.objects.create(name='Vitamins')
        self.paracetamol = Product.objects.create(
            name='Paracetamol 500mg', description='Fever and pain',
            price=Decimal('5.00'), category=self.pain
        )
        self.ibuprofen = Product.objects.create(
            name='Ibuprofen 200mg', price=Decimal('8.00'), category=self.pain
        )
        self.vitamin = Product.objects.create(
            name='Vitamin C 1g', price=Decimal('3.00'), category=self.vitamins
        )
        Product.objects.create(
            name='Paracetamol Syrup', price=Decimal('6.00'), category=self.pain, is_active=False
        )

        self.store = Store.objects.create(name='Pharmacie Sud', location='Anosy')
        StoreProduct.objects.create(store=self.store, product=self.ibuprofen, price=Decimal('9.00'))
        StoreProduct.objects.create(store=self.store, product=self.vitamin, price=Decimal('0.00'))

    def test_catalog_requires_authentication(self):
        response = self.client.get(reverse('catalog:product-list'))

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_only_staff_can_create_products(self):
        payload = {'name': 'Zinc 15mg', 'price': '2.50', 'category_id': self.vitamins.id}

        self.client.force_authenticate(user=self.user)
        response = self.client.post(reverse('catalog:product-list'), payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.staff)
        response = self.client.post(reverse('catalog:product-list'), payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['category']['id'], self.vitamins.id)

    def test_product_list_hides_inactive(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.get(reverse('catalog:product-list'))

        names = [p['name'] for p in response.data['results']]
        self.assertNotIn('Paracetamol Syrup', names)
        self.assertEqual(len(names), 3)

    def test_search_by_keyword_and_category(self):
        self.client.force_authenticate(user=self.user)
        url = reverse('catalog:product-search')

        response = self.client.get(url, {'q': 'fever'})
        self.assertEqual([p['id'] for p in response.data['results']], [self.paracetamol.id])

        response = self.client.get(url, {'category_id': self.vitamins.id})
        self.assertEqual([p['id'] for p in response.data['results']], [self.vitamin.id])

    def test_search_by_price_range(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.get(
            reverse('catalog:product-search'), {'min_price': '4', 'max_price': '6'}
        )

        self.assertEqual([p['id'] for p in response.data['results']], [self.paracetamol.id])

    def test_search_invalid_price_ignored(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.get(reverse('catalog:product-search'), {'min_price': 'cheap'})

        self.assertEqual(len(response.data['results']), 3)

    def test_search_rejects_non_integer_ids(self):
        self.client.force_authenticate(user=self.user)
        url = reverse('catalog:product-search')

        for params in ({'category_id': 'abc'}, {'store_id': '1.5'}):
            response = self.client.get(url, params)
            self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
            self.assertEqual(response.data['error'], 'Validation Error')

    def test_search_store_priced_products_only(self):
        """A store binding without a positive price does not count as carried."""
        self.client.force_authenticate(user=self.user)

        response = self.client.get(reverse('catalog:product-search'), {'store_id': self.store.id})

        self.assertEqual([p['id'] for p in response.data['results']], [self.ibuprofen.id])

    def test_autocomplete(self):
        self.client.force_authenticate(user=self.user)
        url = reverse('catalog:product-autocomplete')

        response = self.client.get(url, {'q': 'pa'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'Validation Error')

        response = self.client.get(url, {'q': 'para'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([p['id'] for p in response.data], [self.paracetamol.id])

    def test_store_binding_validation(self):
        self.client.force_authenticate(user=self.staff)
        url = reverse('catalog:store-product-list')

        response = self.client.post(url, {
            'store_id': self.store.id, 'product_id': self.paracetamol.id, 'price': '0.00'
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post(url, {
            'store_id': self.store.id, 'product_id': self.ibuprofen.id, 'price': '7.00'
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post(url, {
            'store_id': self.store.id, 'product_id': self.paracetamol.id, 'price': '5.75'
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['store']['id'], self.store.id)

    def test_store_bindings_filtered_by_store(self):
        other = Store.objects.create(name='Pharmacie Est', location='Ampefiloha')
        StoreProduct.objects.create(store=other, product=self.paracetamol, price=Decimal('5.20'))
        self.client.force_authenticate(user=self.user)

        response = self.client.get(reverse('catalog:store-product-list'), {'store_id': other.id})

        self.assertEqual(len(response.data['results']), 1)
        self.assertEqual(response.data['results'][0]['product']['id'], self.paracetamol.id)

    def test_store_bindings_reject_non_integer_ids(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.get(reverse('catalog:store-product-list'), {'product_id': 'aspirin'})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['detail'], 'product_id must be an integer')


@override_settings(RATE_LIMIT_ENABLED=True)
class RateLimitTestCase(TestCase):
    """Test the Redis fixed window limiter with a stubbed client."""

    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(username='customer', password='pass')
        self.client.force_authenticate(user=self.user)
        self.redis = MagicMock()
        self.redis.ttl.return_value = 30

    def test_under_limit_sets_headers(self):
        self.redis.incr.return_value = 1

        with patch('core.rate_limiting.get_redis_client', return_value=self.redis):
            response = self.client.get(reverse('catalog:product-autocomplete'), {'q': 'para'})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response['X-RateLimit-Remaining'], '19')
        self.redis.expire.assert_called_once()
        key = self.redis.incr.call_args[0][0]
        self.assertTrue(key.endswith(f'user:{self.user.pk}'))

    def test_over_limit_rejected(self):
        self.redis.incr.return_value = 21

        with patch('core.rate_limiting.get_redis_client', return_value=self.redis):
            response = self.client.get(reverse('catalog:product-autocomplete'), {'q': 'para'})

        self.assertEqual(response.status_code, status.HTTP_429_TOO_MANY_REQUESTS)
        self.assertEqual(response['Retry-After'], '30')

    def test_negotiation_views_limited(self):
        self.redis.incr.return_value = 61

        with patch('core.rate_limiting.get_redis_client', return_value=self.redis):
            response = self.client.post(
                reverse('orders:order-item-accept', args=[1]), {}, format='json'
            )

        self.assertEqual(response.status_code, status.HTTP_429_TOO_MANY_REQUESTS)

    def test_redis_unavailable_fails_open(self):
        with patch('core.rate_limiting.get_redis_client', return_value=None):
            response = self.client.get(reverse('catalog:product-autocomplete'), {'q': 'para'})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertNotIn('X-RateLimit-Limit', response)


class RedisReconnectTestCase(TestCase):
    """Test that a failed Redis connection is retried after the cool-down."""

    def setUp(self):
        saved = (rate_limiting._redis_client, rate_limiting._redis_retry_at)
        rate_limiting._redis_client = None
        rate_limiting._redis_retry_at = 0.0

        def restore():
            rate_limiting._redis_client, rate_limiting._redis_retry_at = saved
        self.addCleanup(restore)

    def test_retry_after_cooldown(self):
        """
        Test: Rate limiting comes back once Redis recovers.

        Given: Redis is down on the first connection attempt
        When: The client is requested again before and after the cool-down
        Then: No reconnect inside the window, a working client after it
        """
        healthy = MagicMock()
        failures = [redis.ConnectionError('connection refused'), healthy]

        with patch('core.rate_limiting.redis.Redis.from_url', side_effect=failures) as from_url, \
                patch('core.rate_limiting.time.monotonic') as clock:
            clock.return_value = 100.0
            self.assertIsNone(rate_limiting.get_redis_client())

            clock.return_value = 100.0 + rate_limiting.REDIS_RETRY_SECONDS - 1
            self.assertIsNone(rate_limiting.get_redis_client())
            self.assertEqual(from_url.call_count, 1)

            clock.return_value = 100.0 + rate_limiting.REDIS_RETRY_SECONDS
            self.assertIs(rate_limiting.get_redis_client(), healthy)

        self.assertEqual(from_url.call_count, 2)
        healthy.ping.assert_called_once()
        self.assertIs(rate_limiting.get_redis_client(), healthy)
