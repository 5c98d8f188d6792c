"""
Order Service Layer - Atomic order placement.

Placement validates the whole request before writing anything:
1. Check item structure (quantities, duplicate product/store pairs)
2. Check stores and products exist and are active
3. Price each item from the store binding, falling back to the catalog price
4. Create the order and its PENDING items, compute the total
"""
import logging
from decimal import Decimal
from typing import Dict, List

from django.db import IntegrityError, transaction
from django.db.models import Count, DecimalField, ExpressionWrapper, F, Q, Sum

from catalog.models import Product, Store, StoreProduct
from .actors import Actor
from .exceptions import OrderValidationError
from .models import Order, OrderItem, generate_order_reference

logger = logging.getLogger(__name__)

REFERENCE_ATTEMPTS = 5


def validate_order_items(items: List[Dict]) -> None:
    """
    Validate order items structure.

    Args:
        items: List of dicts with 'product_id', 'store_id' and 'quantity'

    Raises:
        OrderValidationError: If validation fails
    """
    if not items:
        raise OrderValidationError("Order must contain at least one item")

    seen = set()
    for idx, item in enumerate(items):
        for key in ('product_id', 'store_id', 'quantity'):
            if key not in item:
                raise OrderValidationError(f"Item {idx}: missing '{key}'")

        quantity = item['quantity']
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise OrderValidationError(f"Item {idx}: quantity must be a positive integer")

        pair = (item['product_id'], item['store_id'])
        if pair in seen:
            raise OrderValidationError(
                f"Item {idx}: duplicate product {pair[0]} for store {pair[1]}"
            )
        seen.add(pair)


def _create_order(actor: Actor, notes: str) -> Order:
    """
    Insert the order under a fresh reference. A reference collision rolls
    back only its savepoint and is retried with a new one.
    """
    for attempt in range(1, REFERENCE_ATTEMPTS + 1):
        reference = generate_order_reference()
        try:
            with transaction.atomic():
                return Order.objects.create(
                    customer_id=actor.user_id, reference=reference, notes=notes or ''
                )
        except IntegrityError:
            if attempt == REFERENCE_ATTEMPTS:
                raise
            logger.warning(f"Order reference {reference} already taken, retrying ({attempt}/{REFERENCE_ATTEMPTS})")


def place_order(actor: Actor, items: List[Dict], notes: str = '') -> Order:
    """
    Place an order for the acting customer.

    Every item starts PENDING and waits for its store to accept, refuse or
    suggest a substitute.

    Raises:
        OrderValidationError: If items, stores or products are invalid
    """
    validate_order_items(items)

    store_ids = {item['store_id'] for item in items}
    product_ids = {item['product_id'] for item in items}

    stores = {s.id: s for s in Store.objects.filter(id__in=store_ids, is_active=True)}
    missing_stores = store_ids - set(stores)
    if missing_stores:
        raise OrderValidationError(f"Stores not found or inactive: {sorted(missing_stores)}")

    products = {p.id: p for p in Product.objects.filter(id__in=product_ids, is_active=True)}
    missing_products = product_ids - set(products)
    if missing_products:
        raise OrderValidationError(f"Products not found or inactive: {sorted(missing_products)}")

    bindings = {
        (sp.store_id, sp.product_id): sp.price
        for sp in StoreProduct.objects.filter(store_id__in=store_ids, product_id__in=product_ids)
    }

    with transaction.atomic():
        order = _create_order(actor, notes)

        order_items = []
        for item in items:
            product = products[item['product_id']]
            store = stores[item['store_id']]
            unit_price = bindings.get((store.id, product.id))
            if unit_price is None or unit_price <= 0:
                unit_price = product.price

            order_items.append(OrderItem(
                order=order,
                product=product,
                store=store,
                quantity=item['quantity'],
                unit_price=unit_price,
            ))

        OrderItem.objects.bulk_create(order_items)

        order.total_amount = sum(
            (oi.line_total for oi in order_items), Decimal('0.00')
        )
        order.save(update_fields=['total_amount', 'updated_at'])

    logger.info(
        f"Order {order.reference} placed by user {actor.user_id}: "
        f"{len(order_items)} items, total {order.total_amount}"
    )
    return order


def negotiation_stats(queryset=None) -> Dict:
    """Count items per store status, plus the revenue of accepted items."""
    if queryset is None:
        queryset = OrderItem.objects.all()

    status = OrderItem.StoreStatus
    line_total = DecimalField(max_digits=14, decimal_places=2)
    stats = queryset.aggregate(
        total_items=Count('id'),
        pending=Count('id', filter=Q(store_status=status.PENDING)),
        accepted=Count('id', filter=Q(store_status=status.ACCEPTED)),
        refused=Count('id', filter=Q(store_status=status.REFUSED)),
        suggested=Count('id', filter=Q(store_status=status.SUGGESTED)),
        accepted_revenue=Sum(
            ExpressionWrapper(F('store_price') * F('quantity'), output_field=line_total),
            filter=Q(store_status=status.ACCEPTED),
        ),
    )
    stats['accepted_revenue'] = str(stats['accepted_revenue'] or Decimal('0.00'))
    return stats
