"""
Tests for order placement and the store negotiation workflow.

Test Cases:
1. Store accepts an item at its own price, order total follows
2. Store refuses an item with a reason, item leaves the total
3. Store suggests a substitute, admin approves it, store accepts it
4. Authorization and state checks leave the item untouched
5. Batch store actions roll back together
6. Pending items listing and negotiation statistics
7. Notifications are queued after commit
8. API status codes and error bodies
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch
import threading

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.db import IntegrityError, connection
from django.test import TestCase, TransactionTestCase, override_settings, skipUnlessDBFeature
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from catalog.models import Category, Product, Store, StoreProduct
from orders.actors import Actor, Capability, resolve_actor
from orders.exceptions import BadRequest, Forbidden, NotFound, OrderValidationError, Unauthenticated
from orders.models import Order, OrderItem
from orders.negotiation import (
    NegotiationService,
    StoreAction,
    accept_order_item,
    apply_store_actions,
    approve_suggestion,
    pending_items_for_store,
    refuse_order_item,
    suggest_order_item,
)
from orders.repositories import OrderItemRepository, OrderRepository, StoreProductLookup
from orders.services import negotiation_stats, place_order, validate_order_items
from orders.tasks import generate_daily_negotiation_report, notify_order_item_action

User = get_user_model()


class MarketplaceFixtureMixin:
    """
    Two stores with one owner each, a customer and an admin.

    The customer's order holds two items for `self.store`:
        - 2x Paracetamol, bound at 6.00 in the store
        - 1x Vitamin C, not carried by the store (catalog price 3.00)
    Total at placement: 2 * 6.00 + 1 * 3.00 = 15.00
    """

    def create_fixtures(self):
        self.customer = User.objects.create_user(username='customer', password='pass')
        self.owner = User.objects.create_user(username='owner', password='pass')
        self.other_owner = User.objects.create_user(username='other_owner', password='pass')
        self.admin = User.objects.create_user(username='admin', password='pass', is_staff=True)

        self.category = Category.objects.create(name='Pharmacy')
        self.paracetamol = Product.objects.create(
            name='Paracetamol 500mg', price=Decimal('5.00'), category=self.category
        )
        self.ibuprofen = Product.objects.create(
            name='Ibuprofen 200mg', price=Decimal('8.00'), category=self.category
        )
        self.vitamin = Product.objects.create(
            name='Vitamin C', price=Decimal('3.00'), category=self.category
        )

        self.store = Store.objects.create(name='Pharmacie Centrale', location='Analakely')
        self.store.owners.add(self.owner)
        self.other_store = Store.objects.create(name='Pharmacie du Lac', location='Ivandry')
        self.other_store.owners.add(self.other_owner)

        self.paracetamol_binding = StoreProduct.objects.create(
            store=self.store, product=self.paracetamol, price=Decimal('6.00'), stock=50
        )
        StoreProduct.objects.create(
            store=self.store, product=self.ibuprofen, price=Decimal('9.00'), stock=20
        )
        StoreProduct.objects.create(
            store=self.other_store, product=self.paracetamol, price=Decimal('5.50'), stock=10
        )

        self.customer_actor = resolve_actor(self.customer)
        self.owner_actor = resolve_actor(self.owner)
        self.other_owner_actor = resolve_actor(self.other_owner)
        self.admin_actor = resolve_actor(self.admin)

        self.order = place_order(self.customer_actor, [
            {'product_id': self.paracetamol.id, 'store_id': self.store.id, 'quantity': 2},
            {'product_id': self.vitamin.id, 'store_id': self.store.id, 'quantity': 1},
        ])
        self.paracetamol_item = self.order.items.get(product=self.paracetamol)
        self.vitamin_item = self.order.items.get(product=self.vitamin)

    def assertTotal(self, expected):
        self.order.refresh_from_db()
        self.assertEqual(self.order.total_amount, Decimal(expected))

    def assertUntouched(self, item):
        item.refresh_from_db()
        self.assertEqual(item.store_status, OrderItem.StoreStatus.PENDING)
        self.assertIsNone(item.store_price)
        self.assertIsNone(item.store_action_at)


class ActorTestCase(TestCase):
    """Test capability resolution for request users."""

    def setUp(self):
        self.user = User.objects.create_user(username='someone', password='pass')
        self.store = Store.objects.create(name='Corner Store', location='Isoraka')

    def test_anonymous_user_is_unauthenticated(self):
        with self.assertRaises(Unauthenticated):
            resolve_actor(AnonymousUser())
        with self.assertRaises(Unauthenticated):
            resolve_actor(None)

    def test_plain_user_is_customer_only(self):
        actor = resolve_actor(self.user)

        self.assertEqual(actor.capabilities, frozenset({Capability.CUSTOMER}))
        self.assertFalse(actor.is_admin)
        self.assertFalse(actor.is_store_owner)
        self.assertFalse(actor.owns_store(self.store))

    def test_store_owner_capability(self):
        self.store.owners.add(self.user)

        actor = resolve_actor(self.user)

        self.assertTrue(actor.is_store_owner)
        self.assertEqual(actor.store_ids, frozenset({self.store.id}))
        self.assertTrue(actor.owns_store(self.store))
        self.assertTrue(actor.owns_store(self.store.id))
        self.assertFalse(actor.owns_store(None))

    def test_staff_user_is_admin(self):
        self.user.is_staff = True
        self.user.save()

        self.assertTrue(resolve_actor(self.user).is_admin)

    def test_store_ids_without_capability_grant_nothing(self):
        actor = Actor(user_id=1, store_ids=frozenset({self.store.id}))

        self.assertFalse(actor.owns_store(self.store))


class OrderPlacementTestCase(MarketplaceFixtureMixin, TestCase):
    """Test order placement and its validation."""

    def setUp(self):
        self.create_fixtures()

    def test_order_placed_with_pending_items(self):
        """
        Test: Placed items start PENDING, priced from the store binding.

        Given: Paracetamol bound at 6.00, Vitamin C not bound
        When: Placing the fixture order
        Then: Paracetamol uses 6.00, Vitamin C falls back to 3.00
        """
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertEqual(self.order.customer, self.customer)
        self.assertTrue(self.order.reference.startswith('ORD-'))
        self.assertEqual(self.order.item_count, 2)
        self.assertEqual(self.paracetamol_item.unit_price, Decimal('6.00'))
        self.assertEqual(self.vitamin_item.unit_price, Decimal('3.00'))
        for item in self.order.items.all():
            self.assertEqual(item.store_status, OrderItem.StoreStatus.PENDING)
            self.assertIsNone(item.store_price)
        self.assertTotal('15.00')

    def test_validation_error_empty_items(self):
        with self.assertRaises(OrderValidationError):
            validate_order_items([])

    def test_validation_error_invalid_quantity(self):
        for quantity in (0, -1, '2', True):
            with self.assertRaises(OrderValidationError):
                validate_order_items([
                    {'product_id': self.paracetamol.id, 'store_id': self.store.id, 'quantity': quantity}
                ])

    def test_validation_error_missing_key(self):
        with self.assertRaises(OrderValidationError) as ctx:
            validate_order_items([{'product_id': self.paracetamol.id, 'quantity': 1}])

        self.assertIn('store_id', str(ctx.exception))

    def test_validation_error_duplicate_product_for_store(self):
        items = [
            {'product_id': self.paracetamol.id, 'store_id': self.store.id, 'quantity': 1},
            {'product_id': self.paracetamol.id, 'store_id': self.store.id, 'quantity': 2},
        ]
        with self.assertRaises(OrderValidationError):
            validate_order_items(items)

    def test_same_product_from_two_stores_is_allowed(self):
        order = place_order(self.customer_actor, [
            {'product_id': self.paracetamol.id, 'store_id': self.store.id, 'quantity': 1},
            {'product_id': self.paracetamol.id, 'store_id': self.other_store.id, 'quantity': 1},
        ])

        self.assertEqual(order.total_amount, Decimal('11.50'))

    def test_order_inactive_store(self):
        self.other_store.is_active = False
        self.other_store.save()
        orders_before = Order.objects.count()

        with self.assertRaises(OrderValidationError):
            place_order(self.customer_actor, [
                {'product_id': self.paracetamol.id, 'store_id': self.other_store.id, 'quantity': 1}
            ])

        self.assertEqual(Order.objects.count(), orders_before)

    def test_order_invalid_product(self):
        with self.assertRaises(OrderValidationError) as ctx:
            place_order(self.customer_actor, [
                {'product_id': 99999, 'store_id': self.store.id, 'quantity': 1}
            ])

        self.assertIn('not found', str(ctx.exception).lower())

    def test_reference_collision_retried(self):
        """
        Test: A taken reference is replaced instead of failing the order.

        Given: The reference generator repeats 123456 once
        When: Placing two orders
        Then: The second order gets the next generated reference
        """
        items = [{'product_id': self.ibuprofen.id, 'store_id': self.store.id, 'quantity': 1}]

        with patch('orders.models.random.randint', side_effect=[123456, 123456, 654321]):
            first = place_order(self.customer_actor, items)
            second = place_order(self.customer_actor, items)

        self.assertTrue(first.reference.endswith('-123456'))
        self.assertTrue(second.reference.endswith('-654321'))
        self.assertEqual(second.items.count(), 1)

    def test_reference_collision_gives_up(self):
        items = [{'product_id': self.ibuprofen.id, 'store_id': self.store.id, 'quantity': 1}]

        with patch('orders.models.random.randint', return_value=123456):
            place_order(self.customer_actor, items)
            orders_before = Order.objects.count()
            with self.assertRaises(IntegrityError):
                place_order(self.customer_actor, items)

        self.assertEqual(Order.objects.count(), orders_before)


class AcceptOrderItemTestCase(MarketplaceFixtureMixin, TestCase):
    """Test the store accepting an item."""

    def setUp(self):
        self.create_fixtures()

    def test_accept_at_store_price(self):
        """
        Test: Accepting commits the store's current bound price.

        Given: The binding price changed to 7.00 after placement
        When: The owner accepts the Paracetamol item
        Then: store_price is 7.00 and the total counts 2 * 7.00
        """
        self.paracetamol_binding.price = Decimal('7.00')
        self.paracetamol_binding.save()

        item = accept_order_item(self.paracetamol_item.id, self.owner_actor, notes='Ready for pickup')

        item.refresh_from_db()
        self.assertEqual(item.store_status, OrderItem.StoreStatus.ACCEPTED)
        self.assertEqual(item.store_price, Decimal('7.00'))
        self.assertEqual(item.store_notes, 'Ready for pickup')
        self.assertIsNotNone(item.store_action_at)
        self.assertTotal('17.00')

    def test_accept_without_notes_keeps_existing_notes(self):
        OrderItem.objects.filter(id=self.paracetamol_item.id).update(store_notes='Earlier note')

        item = accept_order_item(self.paracetamol_item.id, self.owner_actor)

        self.assertEqual(item.store_notes, 'Earlier note')

    def test_accept_product_not_carried_by_store(self):
        with self.assertRaises(BadRequest) as ctx:
            accept_order_item(self.vitamin_item.id, self.owner_actor)

        self.assertIn('not available in your store', str(ctx.exception))
        self.assertUntouched(self.vitamin_item)
        self.assertTotal('15.00')

    def test_accept_with_invalid_store_price(self):
        StoreProduct.objects.filter(id=self.paracetamol_binding.id).update(price=Decimal('0.00'))

        with self.assertRaises(BadRequest) as ctx:
            accept_order_item(self.paracetamol_item.id, self.owner_actor)

        self.assertEqual(str(ctx.exception), 'Store product has no valid price set')
        self.assertUntouched(self.paracetamol_item)

    def test_accept_by_other_store_owner_forbidden(self):
        with self.assertRaises(Forbidden):
            accept_order_item(self.paracetamol_item.id, self.other_owner_actor)

        self.assertUntouched(self.paracetamol_item)

    def test_accept_by_customer_forbidden(self):
        with self.assertRaises(Forbidden):
            accept_order_item(self.paracetamol_item.id, self.customer_actor)

        self.assertUntouched(self.paracetamol_item)

    def test_accept_unknown_item(self):
        with self.assertRaises(NotFound):
            accept_order_item(99999, self.owner_actor)

    def test_accept_without_actor(self):
        with self.assertRaises(Unauthenticated):
            accept_order_item(self.paracetamol_item.id, None)

        self.assertUntouched(self.paracetamol_item)

    def test_accept_twice_rejected(self):
        """
        Test: Store actions only apply to PENDING items.

        Given: An item already accepted
        When: The owner accepts or refuses it again
        Then: BadRequest, the first decision stays
        """
        accept_order_item(self.paracetamol_item.id, self.owner_actor)

        with self.assertRaises(BadRequest):
            accept_order_item(self.paracetamol_item.id, self.owner_actor)
        with self.assertRaises(BadRequest):
            refuse_order_item(self.paracetamol_item.id, self.owner_actor, reason='Changed my mind')

        self.paracetamol_item.refresh_from_db()
        self.assertEqual(self.paracetamol_item.store_status, OrderItem.StoreStatus.ACCEPTED)


class RefuseOrderItemTestCase(MarketplaceFixtureMixin, TestCase):
    """Test the store refusing an item."""

    def setUp(self):
        self.create_fixtures()

    def test_refuse_with_reason(self):
        """
        Test: A refused item no longer counts toward the total.

        Given: The fixture order at 15.00
        When: The owner refuses the Paracetamol item
        Then: The reason is kept verbatim and the total drops to 3.00
        """
        item = refuse_order_item(self.paracetamol_item.id, self.owner_actor, reason='  Out of stock  ')

        item.refresh_from_db()
        self.assertEqual(item.store_status, OrderItem.StoreStatus.REFUSED)
        self.assertEqual(item.store_notes, '  Out of stock  ')
        self.assertIsNotNone(item.store_action_at)
        self.assertEqual(item.line_total, Decimal('0.00'))
        self.assertTotal('3.00')

    def test_refuse_requires_reason(self):
        for reason in (None, '', '   '):
            with self.assertRaises(BadRequest):
                refuse_order_item(self.paracetamol_item.id, self.owner_actor, reason=reason)

        self.assertUntouched(self.paracetamol_item)

    def test_refuse_by_other_store_owner_forbidden(self):
        with self.assertRaises(Forbidden) as ctx:
            refuse_order_item(self.paracetamol_item.id, self.other_owner_actor, reason='Nope')

        self.assertIn('refuse', str(ctx.exception))
        self.assertUntouched(self.paracetamol_item)


class SuggestionTestCase(MarketplaceFixtureMixin, TestCase):
    """Test suggesting a substitute and approving it."""

    def setUp(self):
        self.create_fixtures()

    def test_suggest_substitute(self):
        """
        Test: A suggestion records the substitute at the store's price.

        Given: The store does not carry Vitamin C but binds Ibuprofen at 9.00
        When: The owner suggests Ibuprofen for the Vitamin C item
        Then: Item is SUGGESTED at 9.00, the order total is unchanged
        """
        item = suggest_order_item(
            self.vitamin_item.id, self.owner_actor, self.ibuprofen.id,
            suggestion='Same effect', notes='Vitamin C discontinued'
        )

        item.refresh_from_db()
        self.assertEqual(item.store_status, OrderItem.StoreStatus.SUGGESTED)
        self.assertEqual(item.suggested_product, self.ibuprofen)
        self.assertEqual(item.product, self.vitamin)
        self.assertEqual(item.store_price, Decimal('9.00'))
        self.assertEqual(item.store_suggestion, 'Same effect')
        self.assertEqual(item.store_notes, 'Vitamin C discontinued')
        self.assertTotal('15.00')

    def test_suggest_requires_product_id(self):
        with self.assertRaises(BadRequest):
            suggest_order_item(self.vitamin_item.id, self.owner_actor, None)

        self.assertUntouched(self.vitamin_item)

    def test_suggest_unknown_product(self):
        with self.assertRaises(NotFound):
            suggest_order_item(self.vitamin_item.id, self.owner_actor, 99999)

        self.assertUntouched(self.vitamin_item)

    def test_suggest_product_not_in_store(self):
        with self.assertRaises(BadRequest) as ctx:
            suggest_order_item(self.paracetamol_item.id, self.owner_actor, self.vitamin.id)

        self.assertIn('not available in your store inventory', str(ctx.exception))
        self.assertUntouched(self.paracetamol_item)

    def test_suggest_by_other_store_owner_forbidden(self):
        with self.assertRaises(Forbidden):
            suggest_order_item(self.vitamin_item.id, self.other_owner_actor, self.paracetamol.id)

        self.assertUntouched(self.vitamin_item)

    def test_full_suggestion_cycle(self):
        """
        Test: Suggest, approve, then accept.

        Given: A suggestion of Ibuprofen (9.00) for Vitamin C
        When: An admin approves it and the owner accepts the item
        Then: The item carries Ibuprofen, reopens PENDING at 9.00,
              and ends ACCEPTED with the total at 12.00 + 9.00
        """
        suggest_order_item(
            self.vitamin_item.id, self.owner_actor, self.ibuprofen.id, notes='Discontinued'
        )

        item = approve_suggestion(self.vitamin_item.id, self.admin_actor, admin_notes='Fine by us')

        item.refresh_from_db()
        self.assertEqual(item.product, self.ibuprofen)
        self.assertEqual(item.store_status, OrderItem.StoreStatus.PENDING)
        self.assertIsNone(item.suggested_product)
        self.assertIsNone(item.store_price)
        self.assertEqual(item.unit_price, Decimal('9.00'))
        self.assertEqual(item.store_notes, 'Discontinued\n[Admin Approved]: Fine by us')
        self.assertTotal('21.00')

        item = accept_order_item(self.vitamin_item.id, self.owner_actor)

        self.assertEqual(item.store_status, OrderItem.StoreStatus.ACCEPTED)
        self.assertEqual(item.store_price, Decimal('9.00'))
        self.assertTotal('21.00')

    def test_approve_without_notes(self):
        suggest_order_item(self.vitamin_item.id, self.owner_actor, self.ibuprofen.id)

        item = approve_suggestion(self.vitamin_item.id, self.admin_actor)

        self.assertIsNone(item.store_notes)

    def test_approve_by_non_admin_forbidden(self):
        suggest_order_item(self.vitamin_item.id, self.owner_actor, self.ibuprofen.id)

        for actor in (self.owner_actor, self.customer_actor):
            with self.assertRaises(Forbidden):
                approve_suggestion(self.vitamin_item.id, actor)

        self.vitamin_item.refresh_from_db()
        self.assertEqual(self.vitamin_item.store_status, OrderItem.StoreStatus.SUGGESTED)
        self.assertEqual(self.vitamin_item.product, self.vitamin)

    def test_approve_item_not_suggested(self):
        with self.assertRaises(BadRequest):
            approve_suggestion(self.paracetamol_item.id, self.admin_actor)

        self.assertUntouched(self.paracetamol_item)

    def test_approve_unknown_item_checked_before_role(self):
        with self.assertRaises(NotFound):
            approve_suggestion(99999, self.customer_actor)

    def test_approve_without_actor(self):
        with self.assertRaises(Unauthenticated):
            approve_suggestion(self.vitamin_item.id, None)


class StoreActionsBatchTestCase(MarketplaceFixtureMixin, TestCase):
    """Test several store actions applied to one order."""

    def setUp(self):
        self.create_fixtures()

    def test_batch_accept_and_refuse(self):
        order = apply_store_actions(self.order.id, self.owner_actor, [
            StoreAction(order_item_id=self.paracetamol_item.id, action='accept'),
            StoreAction(order_item_id=self.vitamin_item.id, action='refuse', reason='Not carried'),
        ])

        self.assertEqual(order.total_amount, Decimal('12.00'))
        self.paracetamol_item.refresh_from_db()
        self.vitamin_item.refresh_from_db()
        self.assertEqual(self.paracetamol_item.store_status, OrderItem.StoreStatus.ACCEPTED)
        self.assertEqual(self.vitamin_item.store_status, OrderItem.StoreStatus.REFUSED)
        self.assertEqual(self.vitamin_item.store_notes, 'Not carried')

    def test_batch_rolls_back_on_failure(self):
        """
        Test: One failing action cancels the whole batch.

        Given: A valid accept followed by a refuse without reason
        When: Applying the batch
        Then: BadRequest, and the accepted item is back to PENDING
        """
        with self.assertRaises(BadRequest):
            apply_store_actions(self.order.id, self.owner_actor, [
                StoreAction(order_item_id=self.paracetamol_item.id, action='accept'),
                StoreAction(order_item_id=self.vitamin_item.id, action='refuse', reason=''),
            ])

        self.assertUntouched(self.paracetamol_item)
        self.assertUntouched(self.vitamin_item)
        self.assertTotal('15.00')

    def test_batch_item_from_other_order(self):
        other_order = place_order(self.customer_actor, [
            {'product_id': self.ibuprofen.id, 'store_id': self.store.id, 'quantity': 1}
        ])
        foreign_item = other_order.items.get()

        with self.assertRaises(BadRequest):
            apply_store_actions(self.order.id, self.owner_actor, [
                StoreAction(order_item_id=foreign_item.id, action='accept'),
            ])

        self.assertUntouched(foreign_item)

    def test_batch_item_of_other_store_forbidden(self):
        with self.assertRaises(Forbidden):
            apply_store_actions(self.order.id, self.other_owner_actor, [
                StoreAction(order_item_id=self.paracetamol_item.id, action='accept'),
            ])

    def test_batch_by_user_without_store(self):
        with self.assertRaises(NotFound) as ctx:
            apply_store_actions(self.order.id, self.customer_actor, [
                StoreAction(order_item_id=self.paracetamol_item.id, action='accept'),
            ])

        self.assertEqual(str(ctx.exception), 'No store found for this user')

    def test_batch_unknown_order_and_action(self):
        with self.assertRaises(NotFound):
            apply_store_actions(99999, self.owner_actor, [
                StoreAction(order_item_id=self.paracetamol_item.id, action='accept'),
            ])
        with self.assertRaises(BadRequest):
            apply_store_actions(self.order.id, self.owner_actor, [
                StoreAction(order_item_id=self.paracetamol_item.id, action='cancel'),
            ])
        with self.assertRaises(BadRequest):
            apply_store_actions(self.order.id, self.owner_actor, [])

        self.assertUntouched(self.paracetamol_item)


class PendingItemsAndStatsTestCase(MarketplaceFixtureMixin, TestCase):
    """Test the pending items listing and negotiation statistics."""

    def setUp(self):
        self.create_fixtures()
        for quantity in (1, 2, 3):
            place_order(self.customer_actor, [
                {'product_id': self.ibuprofen.id, 'store_id': self.store.id, 'quantity': quantity}
            ])
        place_order(self.customer_actor, [
            {'product_id': self.paracetamol.id, 'store_id': self.other_store.id, 'quantity': 1}
        ])

    def test_pending_items_scoped_to_owner_stores(self):
        items = pending_items_for_store(self.owner_actor)

        self.assertEqual(len(items), 5)
        self.assertTrue(all(item.store_id == self.store.id for item in items))
        self.assertEqual(len(pending_items_for_store(self.other_owner_actor)), 1)

    def test_pending_items_newest_orders_first(self):
        items = pending_items_for_store(self.owner_actor)
        created = [item.order.created_at for item in items]

        self.assertEqual(created, sorted(created, reverse=True))

    def test_pending_items_excludes_decided_items(self):
        accept_order_item(self.paracetamol_item.id, self.owner_actor)

        ids = [item.id for item in pending_items_for_store(self.owner_actor)]

        self.assertNotIn(self.paracetamol_item.id, ids)
        self.assertEqual(len(ids), 4)

    def test_pending_items_pagination(self):
        self.assertEqual(len(pending_items_for_store(self.owner_actor, page=1, limit=2)), 2)
        self.assertEqual(len(pending_items_for_store(self.owner_actor, page=3, limit=2)), 1)
        self.assertEqual(len(pending_items_for_store(self.owner_actor, page=4, limit=2)), 0)
        # limit is clamped to 1..100
        self.assertEqual(len(pending_items_for_store(self.owner_actor, page=1, limit=0)), 1)
        self.assertEqual(len(pending_items_for_store(self.owner_actor, page=1, limit=500)), 5)

    def test_pending_items_requires_store(self):
        with self.assertRaises(NotFound):
            pending_items_for_store(self.customer_actor)

    def test_negotiation_stats(self):
        accept_order_item(self.paracetamol_item.id, self.owner_actor)
        suggest_order_item(self.vitamin_item.id, self.owner_actor, self.ibuprofen.id)

        stats = negotiation_stats()

        self.assertEqual(stats['total_items'], 6)
        self.assertEqual(stats['pending'], 4)
        self.assertEqual(stats['accepted'], 1)
        self.assertEqual(stats['refused'], 0)
        self.assertEqual(stats['suggested'], 1)
        self.assertEqual(Decimal(stats['accepted_revenue']), Decimal('12.00'))

    def test_negotiation_stats_empty(self):
        stats = negotiation_stats(OrderItem.objects.none())

        self.assertEqual(stats['total_items'], 0)
        self.assertEqual(Decimal(stats['accepted_revenue']), Decimal('0'))


class NotificationTestCase(MarketplaceFixtureMixin, TestCase):
    """Test notification queuing and the notification task."""

    def setUp(self):
        self.create_fixtures()

    @patch('orders.tasks.notify_order_item_action.delay')
    def test_notification_queued_after_commit(self, mock_delay):
        with self.captureOnCommitCallbacks(execute=True):
            accept_order_item(self.paracetamol_item.id, self.owner_actor)

        mock_delay.assert_called_once_with(self.paracetamol_item.id, 'accept')

    @patch('orders.tasks.notify_order_item_action.delay')
    def test_no_notification_on_failure(self, mock_delay):
        with self.captureOnCommitCallbacks(execute=True):
            with self.assertRaises(Forbidden):
                accept_order_item(self.paracetamol_item.id, self.other_owner_actor)

        mock_delay.assert_not_called()

    @patch('orders.tasks.notify_order_item_action.delay', side_effect=ConnectionError('broker down'))
    def test_broker_failure_does_not_fail_action(self, mock_delay):
        with self.captureOnCommitCallbacks(execute=True):
            item = refuse_order_item(self.paracetamol_item.id, self.owner_actor, reason='Out of stock')

        self.assertEqual(item.store_status, OrderItem.StoreStatus.REFUSED)
        mock_delay.assert_called_once()

    def test_notify_accept(self):
        accept_order_item(self.paracetamol_item.id, self.owner_actor)

        result = notify_order_item_action(self.paracetamol_item.id, 'accept')

        self.assertEqual(result['status'], 'success')
        self.assertEqual(result['recipients'], ['customer'])
        self.assertIn('Pharmacie Centrale', result['message'])
        self.assertIn('6.00', result['message'])

    def test_notify_suggest_includes_admins(self):
        suggest_order_item(self.vitamin_item.id, self.owner_actor, self.ibuprofen.id)

        result = notify_order_item_action(self.vitamin_item.id, 'suggest')

        self.assertEqual(result['recipients'], ['customer', 'admins'])
        self.assertIn('Ibuprofen 200mg', result['message'])

    def test_notify_unknown_item_or_action(self):
        self.assertEqual(notify_order_item_action(99999, 'accept')['status'], 'error')
        self.assertEqual(notify_order_item_action(self.paracetamol_item.id, 'cancel')['status'], 'skipped')

    def test_daily_report_counts_yesterday_only(self):
        accept_order_item(self.paracetamol_item.id, self.owner_actor)
        refuse_order_item(self.vitamin_item.id, self.owner_actor, reason='Not carried')
        OrderItem.objects.filter(id=self.paracetamol_item.id).update(
            store_action_at=timezone.now() - timedelta(days=1)
        )

        stats = generate_daily_negotiation_report()

        self.assertEqual(stats['total_items'], 1)
        self.assertEqual(stats['accepted'], 1)
        self.assertEqual(stats['refused'], 0)


class InterleavedWriteLookup(StoreProductLookup):
    """Runs `on_read` at the first binding read, while an operation holds its locks."""

    def __init__(self, on_read):
        self.on_read = on_read

    def binding_for(self, store, product):
        if self.on_read is not None:
            on_read, self.on_read = self.on_read, None
            on_read()
        return super().binding_for(store, product)


class LockRecordingOrderRepository(OrderRepository):

    def __init__(self, log):
        self.log = log

    def find_for_update(self, order_id):
        self.log.append('order')
        return super().find_for_update(order_id)


class LockRecordingItemRepository(OrderItemRepository):

    def __init__(self, log):
        self.log = log

    def find_for_update(self, order_item_id):
        self.log.append('item')
        return super().find_for_update(order_item_id)


class OrderWriteBackTestCase(MarketplaceFixtureMixin, TestCase):
    """Test that item actions only write the order total back."""

    def setUp(self):
        self.create_fixtures()

    def change_order_elsewhere(self):
        Order.objects.filter(id=self.order.id).update(
            status=Order.Status.CANCELLED, notes='changed elsewhere'
        )

    def test_accept_keeps_concurrent_order_changes(self):
        """
        Test: Accept does not revert order fields it does not own.

        Given: Another writer cancels the order while accept is running
        When: Accept recomputes and saves the total
        Then: The order keeps the other writer's status and notes
        """
        service = NegotiationService(prices=InterleavedWriteLookup(self.change_order_elsewhere))

        service.accept(self.paracetamol_item.id, self.owner_actor)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.notes, 'changed elsewhere')
        self.assertEqual(self.order.total_amount, Decimal('15.00'))

    def test_approve_keeps_concurrent_order_changes(self):
        suggest_order_item(self.vitamin_item.id, self.owner_actor, self.ibuprofen.id)
        service = NegotiationService(prices=InterleavedWriteLookup(self.change_order_elsewhere))

        service.approve_suggestion(self.vitamin_item.id, self.admin_actor)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.notes, 'changed elsewhere')
        self.assertEqual(self.order.total_amount, Decimal('21.00'))

    def test_total_counts_items_changed_concurrently(self):
        def refuse_vitamin_elsewhere():
            OrderItem.objects.filter(id=self.vitamin_item.id).update(
                store_status=OrderItem.StoreStatus.REFUSED, store_notes='Not carried'
            )

        service = NegotiationService(prices=InterleavedWriteLookup(refuse_vitamin_elsewhere))
        service.accept(self.paracetamol_item.id, self.owner_actor)

        self.assertTotal('12.00')

    def locks_taken(self, action):
        log = []
        service = NegotiationService(
            items=LockRecordingItemRepository(log),
            orders=LockRecordingOrderRepository(log),
        )
        action(service)
        return log

    def test_order_locked_before_item(self):
        """Single-item actions take locks in the same order as the batch path."""
        suggest_order_item(self.vitamin_item.id, self.owner_actor, self.ibuprofen.id)

        self.assertEqual(
            self.locks_taken(lambda s: s.accept(self.paracetamol_item.id, self.owner_actor)),
            ['order', 'item']
        )
        self.assertEqual(
            self.locks_taken(lambda s: s.approve_suggestion(self.vitamin_item.id, self.admin_actor)),
            ['order', 'item']
        )
        self.assertEqual(
            self.locks_taken(lambda s: s.refuse(self.vitamin_item.id, self.owner_actor, reason='No')),
            ['order', 'item']
        )


@override_settings(RATE_LIMIT_ENABLED=False)
class OrderAPITestCase(MarketplaceFixtureMixin, TestCase):
    """Test the order and negotiation endpoints."""

    def setUp(self):
        self.create_fixtures()
        self.client = APIClient()

    def test_unauthenticated_request(self):
        url = reverse('orders:order-item-accept', args=[self.paracetamol_item.id])

        response = self.client.post(url, {}, format='json')

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertUntouched(self.paracetamol_item)

    def test_place_order(self):
        self.client.force_authenticate(user=self.customer)

        response = self.client.post(reverse('orders:order-list'), {
            'items': [{'product_id': self.ibuprofen.id, 'store_id': self.store.id, 'quantity': 3}],
            'notes': 'Evening pickup',
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(Decimal(response.data['total_amount']), Decimal('27.00'))
        self.assertEqual(response.data['items'][0]['store_status'], 'PENDING')

    def test_place_order_invalid_store(self):
        self.client.force_authenticate(user=self.customer)

        response = self.client.post(reverse('orders:order-list'), {
            'items': [{'product_id': self.ibuprofen.id, 'store_id': 99999, 'quantity': 1}],
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'Validation Error')

    def test_order_visibility(self):
        self.client.force_authenticate(user=self.customer)
        response = self.client.get(reverse('orders:order-list'))
        self.assertEqual(len(response.data['results']), 1)

        self.client.force_authenticate(user=self.owner)
        response = self.client.get(reverse('orders:order-detail', args=[self.order.id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['items']), 2)

        self.client.force_authenticate(user=self.other_owner)
        response = self.client.get(reverse('orders:order-detail', args=[self.order.id]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_accept_endpoint(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.post(
            reverse('orders:order-item-accept', args=[self.paracetamol_item.id]),
            {'notes': 'In stock'}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['store_status'], 'ACCEPTED')
        self.assertEqual(Decimal(response.data['store_price']), Decimal('6.00'))

    def test_accept_endpoint_forbidden(self):
        self.client.force_authenticate(user=self.other_owner)

        response = self.client.post(
            reverse('orders:order-item-accept', args=[self.paracetamol_item.id]), {}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['error'], 'Forbidden')
        self.assertUntouched(self.paracetamol_item)

    def test_accept_endpoint_not_found(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.post(reverse('orders:order-item-accept', args=[99999]), {}, format='json')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['detail'], 'Order item not found')

    def test_refuse_endpoint_requires_reason(self):
        self.client.force_authenticate(user=self.owner)
        url = reverse('orders:order-item-refuse', args=[self.paracetamol_item.id])

        response = self.client.post(url, {'reason': ''}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertUntouched(self.paracetamol_item)

        response = self.client.post(url, {'reason': 'Out of stock'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['store_status'], 'REFUSED')

    def test_suggest_and_approve_endpoints(self):
        self.client.force_authenticate(user=self.owner)
        response = self.client.post(
            reverse('orders:order-item-suggest', args=[self.vitamin_item.id]),
            {'suggested_product_id': self.ibuprofen.id, 'suggestion': 'Same shelf'}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['suggested_product']['id'], self.ibuprofen.id)

        approve_url = reverse('orders:order-item-approve-suggestion', args=[self.vitamin_item.id])
        response = self.client.post(approve_url, {}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.admin)
        response = self.client.post(approve_url, {'admin_notes': 'OK'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['product']['id'], self.ibuprofen.id)
        self.assertEqual(response.data['store_status'], 'PENDING')

        response = self.client.post(approve_url, {}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_store_actions_endpoint(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.post(
            reverse('orders:order-store-actions', args=[self.order.id]),
            {'actions': [
                {'order_item_id': self.paracetamol_item.id, 'action': 'accept'},
                {'order_item_id': self.vitamin_item.id, 'action': 'suggest',
                 'suggested_product_id': self.ibuprofen.id},
            ]},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        statuses = {item['id']: item['store_status'] for item in response.data['items']}
        self.assertEqual(statuses[self.paracetamol_item.id], 'ACCEPTED')
        self.assertEqual(statuses[self.vitamin_item.id], 'SUGGESTED')
        self.assertEqual(Decimal(response.data['total_amount']), Decimal('15.00'))

    def test_store_actions_endpoint_validates_body(self):
        self.client.force_authenticate(user=self.owner)
        url = reverse('orders:order-store-actions', args=[self.order.id])

        response = self.client.post(url, {'actions': []}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post(url, {'actions': [
            {'order_item_id': self.paracetamol_item.id, 'action': 'refuse'}
        ]}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_pending_endpoint(self):
        self.client.force_authenticate(user=self.owner)
        response = self.client.get(reverse('orders:order-item-pending'), {'limit': 1})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]['order_reference'], self.order.reference)

        response = self.client.get(reverse('orders:order-item-pending'), {'page': 'x'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        self.client.force_authenticate(user=self.customer)
        response = self.client.get(reverse('orders:order-item-pending'))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_stats_endpoint(self):
        accept_order_item(self.paracetamol_item.id, self.owner_actor)

        self.client.force_authenticate(user=self.admin)
        response = self.client.get(reverse('orders:order-item-stats'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['accepted'], 1)

        self.client.force_authenticate(user=self.other_owner)
        response = self.client.get(reverse('orders:order-item-stats'))
        self.assertEqual(response.data['total_items'], 0)

        self.client.force_authenticate(user=self.customer)
        response = self.client.get(reverse('orders:order-item-stats'))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_stats_endpoint_store_filter(self):
        accept_order_item(self.paracetamol_item.id, self.owner_actor)
        self.client.force_authenticate(user=self.admin)
        url = reverse('orders:order-item-stats')

        response = self.client.get(url, {'store_id': self.store.id})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total_items'], 2)

        response = self.client.get(url, {'store_id': 'abc'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'Validation Error')


@skipUnlessDBFeature('has_select_for_update')
class ConcurrentNegotiationTestCase(MarketplaceFixtureMixin, TransactionTestCase):
    """
    Test concurrent store actions on one item to verify the row lock.
    Uses TransactionTestCase for proper multi-threading support.
    """

    def setUp(self):
        self.create_fixtures()

    @patch('orders.tasks.notify_order_item_action.delay')
    def test_concurrent_accept_and_refuse(self, mock_delay):
        """
        Test: Only one of two racing store actions wins.

        Given: A PENDING item
        When: Accept and refuse run at the same time
        Then: Exactly one succeeds, the other sees a non-PENDING item
        """
        results = {}

        def run(key, action):
            try:
                action()
                results[key] = 'ok'
            except BadRequest:
                results[key] = 'rejected'
            finally:
                connection.close()

        item_id = self.paracetamol_item.id
        threads = [
            threading.Thread(target=run, args=(
                'accept', lambda: accept_order_item(item_id, self.owner_actor))),
            threading.Thread(target=run, args=(
                'refuse', lambda: refuse_order_item(item_id, self.owner_actor, reason='Out of stock'))),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(results.values()), ['ok', 'rejected'])
        self.paracetamol_item.refresh_from_db()
        expected = (OrderItem.StoreStatus.ACCEPTED if results['accept'] == 'ok'
                    else OrderItem.StoreStatus.REFUSED)
        self.assertEqual(self.paracetamol_item.store_status, expected)
