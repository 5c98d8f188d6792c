"""
Order item negotiation between stores and administrators.

Store owners act on the items routed to their store:
    - accept: commit the item at the store's bound price
    - refuse: decline the item with a reason
    - suggest: propose a substitute product the store does carry
Administrators approve suggestions, which swaps the product and sends the
item back to PENDING so the store can accept it at its own price.

Each operation runs in a single transaction. Operations that change the order
total lock the order row and then the item row, the same order as the batch
path; suggest locks only the item. Concurrent actions on one order serialize.
All checks happen before the first field is assigned; a failing call changes
nothing.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from django.db import transaction

from .actors import Actor
from .exceptions import BadRequest, Forbidden, NotFound, Unauthenticated
from .models import Order, OrderItem
from .repositories import (
    OrderItemRepository,
    OrderRepository,
    ProductRepository,
    StoreProductLookup,
)

logger = logging.getLogger(__name__)

ACCEPT = 'accept'
REFUSE = 'refuse'
SUGGEST = 'suggest'
APPROVE = 'approve'
STORE_ACTIONS = (ACCEPT, REFUSE, SUGGEST)


@dataclass
class StoreAction:
    """One entry of a batch store update."""
    order_item_id: int
    action: str
    notes: Optional[str] = None
    reason: Optional[str] = None
    suggested_product_id: Optional[int] = None
    suggestion: Optional[str] = None


class NegotiationService:
    """
    Negotiation operations wired to their repositories. The module-level
    functions below use a default instance.
    """

    def __init__(self, items=None, orders=None, products=None, prices=None):
        self.items = items or OrderItemRepository()
        self.orders = orders or OrderRepository()
        self.products = products or ProductRepository()
        self.prices = prices or StoreProductLookup()

    # -- loading and authorization ------------------------------------------

    @staticmethod
    def _require_actor(actor: Optional[Actor]):
        if actor is None:
            raise Unauthenticated('You must be authenticated')

    def _load_item(self, order_item_id) -> OrderItem:
        item = self.items.find_for_update(order_item_id)
        if item is None:
            raise NotFound('Order item not found')
        return item

    def _load_item_with_order(self, order_item_id) -> OrderItem:
        """
        Lock the parent order, then the item, the same order the batch path
        takes. The item's `order` is the locked instance.
        """
        located = self.items.find(order_item_id)
        if located is None:
            raise NotFound('Order item not found')
        order = self.orders.find_for_update(located.order_id)
        item = self._load_item(order_item_id)
        if order is None or item.order_id != order.id:
            raise NotFound('Order item not found')
        item.order = order
        return item

    @staticmethod
    def _require_store_owner(actor: Actor, item: OrderItem, verb: str):
        if not actor.owns_store(item.store_id):
            raise Forbidden(f'You are not authorized to {verb} this order item')

    @staticmethod
    def _require_pending(item: OrderItem):
        if item.store_status != OrderItem.StoreStatus.PENDING:
            raise BadRequest(
                f'Order item is {item.store_status}; only PENDING items can be updated by the store'
            )

    def _bound_price(self, item: OrderItem, product, unavailable_message: str) -> Decimal:
        binding = self.prices.binding_for(item.store, product)
        if binding is None:
            raise BadRequest(unavailable_message)
        if not binding.has_valid_price:
            raise BadRequest('Store product has no valid price set')
        return binding.price

    # -- store side -----------------------------------------------------------

    def _accept(self, item: OrderItem, notes=None):
        if item.product_id is None:
            raise BadRequest('Order item has no product')
        price = self._bound_price(
            item, item.product,
            'This product is not available in your store. '
            'You can suggest an alternative product instead.'
        )
        item.mark_accepted(price, notes)

    def _refuse(self, item: OrderItem, reason):
        if not reason or not reason.strip():
            raise BadRequest('Reason is required for refusing an order item')
        item.mark_refused(reason)

    def _suggest(self, item: OrderItem, suggested_product_id, suggestion=None, notes=None):
        if not suggested_product_id:
            raise BadRequest('Suggested product ID is required for suggesting an alternative')
        product = self.products.find(suggested_product_id)
        if product is None:
            raise NotFound('Suggested product not found')
        price = self._bound_price(
            item, product,
            'The suggested product is not available in your store inventory'
        )
        item.mark_suggested(product, price, suggestion, notes)

    def accept(self, order_item_id, actor: Actor, notes: Optional[str] = None) -> OrderItem:
        self._require_actor(actor)
        with transaction.atomic():
            item = self._load_item_with_order(order_item_id)
            self._require_store_owner(actor, item, 'accept')
            self._require_pending(item)
            self._accept(item, notes)
            self.items.save(item)
            self.orders.recalculate_and_save(item.order)

        logger.info(f"Order item #{item.id} accepted by store {item.store_id} at {item.store_price}")
        _queue_notification(item.id, ACCEPT)
        return item

    def refuse(self, order_item_id, actor: Actor, reason: str) -> OrderItem:
        self._require_actor(actor)
        with transaction.atomic():
            item = self._load_item_with_order(order_item_id)
            self._require_store_owner(actor, item, 'refuse')
            self._require_pending(item)
            self._refuse(item, reason)
            self.items.save(item)
            self.orders.recalculate_and_save(item.order)

        logger.info(f"Order item #{item.id} refused by store {item.store_id}")
        _queue_notification(item.id, REFUSE)
        return item

    def suggest(self, order_item_id, actor: Actor, suggested_product_id,
                suggestion: Optional[str] = None, notes: Optional[str] = None) -> OrderItem:
        # The suggested price is not committed yet, so the order total is left alone.
        self._require_actor(actor)
        with transaction.atomic():
            item = self._load_item(order_item_id)
            self._require_store_owner(actor, item, 'suggest changes to')
            self._require_pending(item)
            self._suggest(item, suggested_product_id, suggestion, notes)
            self.items.save(item)

        logger.info(
            f"Order item #{item.id}: store {item.store_id} suggested product "
            f"{item.suggested_product_id} at {item.store_price}"
        )
        _queue_notification(item.id, SUGGEST)
        return item

    # -- admin side -----------------------------------------------------------

    def approve_suggestion(self, order_item_id, actor: Actor,
                           admin_notes: Optional[str] = None) -> OrderItem:
        self._require_actor(actor)
        with transaction.atomic():
            item = self._load_item_with_order(order_item_id)
            if not actor.is_admin:
                raise Forbidden('Only admins can approve suggestions')
            if item.store_status != OrderItem.StoreStatus.SUGGESTED:
                raise BadRequest('Order item must be in SUGGESTED status to be approved')
            if item.suggested_product_id is None:
                raise BadRequest('No suggested product found')

            new_price = self.prices.price_for(item.store, item.suggested_product)
            item.apply_approved_suggestion(admin_notes)
            if new_price is not None and new_price > 0:
                item.unit_price = new_price
            self.items.save(item)
            self.orders.recalculate_and_save(item.order)

        logger.info(f"Suggestion on order item #{item.id} approved, product is now {item.product_id}")
        _queue_notification(item.id, APPROVE)
        return item

    # -- batch and listings ---------------------------------------------------

    def apply_store_actions(self, order_id, actor: Actor, actions: List[StoreAction]) -> Order:
        """
        Apply several store actions to items of one order atomically.
        The first failing action rolls back the whole batch.
        """
        self._require_actor(actor)
        if not actor.is_store_owner:
            raise NotFound('No store found for this user')
        if not actions:
            raise BadRequest('At least one order item action is required')

        applied = []
        with transaction.atomic():
            order = self.orders.find_for_update(order_id)
            if order is None:
                raise NotFound('Order not found')

            for action in actions:
                item = self.items.find_for_update(action.order_item_id)
                if item is None:
                    raise NotFound(f'Order item {action.order_item_id} not found')
                if not actor.owns_store(item.store_id):
                    raise Forbidden(f'You are not authorized to update order item {item.id}')
                if item.order_id != order.id:
                    raise BadRequest(f'Order item {item.id} does not belong to order {order.id}')
                self._require_pending(item)

                if action.action == ACCEPT:
                    self._accept(item, action.notes)
                elif action.action == REFUSE:
                    self._refuse(item, action.reason)
                elif action.action == SUGGEST:
                    self._suggest(item, action.suggested_product_id, action.suggestion, action.notes)
                else:
                    raise BadRequest(
                        f'Invalid action: {action.action}. Must be one of: {", ".join(STORE_ACTIONS)}'
                    )
                self.items.save(item)
                applied.append((item.id, action.action))

            self.orders.recalculate_and_save(order)

        logger.info(f"Order {order.reference}: applied {len(applied)} store actions")
        for item_id, name in applied:
            _queue_notification(item_id, name)
        return order

    def pending_items(self, actor: Actor, page: int = 1, limit: int = 20):
        """PENDING items of the actor's stores, newest orders first."""
        self._require_actor(actor)
        if not actor.is_store_owner:
            raise NotFound('No store found for this user')
        page = max(1, int(page))
        limit = min(100, max(1, int(limit)))
        offset = (page - 1) * limit
        return list(self.items.pending_for_stores(actor.store_ids)[offset:offset + limit])


def _queue_notification(order_item_id: int, action: str) -> None:
    """Queue the notification task once the surrounding transaction commits."""
    def _send():
        try:
            from .tasks import notify_order_item_action
            notify_order_item_action.delay(order_item_id, action)
        except Exception as e:
            # Notifications never fail the negotiation
            logger.error(f"Failed to queue notification for order item #{order_item_id}: {e}")

    transaction.on_commit(_send)


_default_service = NegotiationService()


def accept_order_item(order_item_id, actor: Actor, notes: Optional[str] = None) -> OrderItem:
    return _default_service.accept(order_item_id, actor, notes)


def refuse_order_item(order_item_id, actor: Actor, reason: str) -> OrderItem:
    return _default_service.refuse(order_item_id, actor, reason)


def suggest_order_item(order_item_id, actor: Actor, suggested_product_id,
                       suggestion: Optional[str] = None, notes: Optional[str] = None) -> OrderItem:
    return _default_service.suggest(order_item_id, actor, suggested_product_id, suggestion, notes)


def approve_suggestion(order_item_id, actor: Actor, admin_notes: Optional[str] = None) -> OrderItem:
    return _default_service.approve_suggestion(order_item_id, actor, admin_notes)


def apply_store_actions(order_id, actor: Actor, actions: List[StoreAction]) -> Order:
    return _default_service.apply_store_actions(order_id, actor, actions)


def pending_items_for_store(actor: Actor, page: int = 1, limit: int = 20):
    return _default_service.pending_items(actor, page, limit)
