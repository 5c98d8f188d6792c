"""
Explicit persistence for the order aggregates and the catalog lookups the
negotiation workflow reads. Callers own the transaction boundary: the
`*_for_update` finders must run inside `transaction.atomic()`.
"""
from decimal import Decimal
from typing import Optional

from catalog.models import Product, Store, StoreProduct
from .models import Order, OrderItem


class OrderItemRepository:

    def find(self, order_item_id) -> Optional[OrderItem]:
        return (
            OrderItem.objects.select_related('store', 'product', 'suggested_product', 'order')
            .filter(pk=order_item_id)
            .first()
        )

    def find_for_update(self, order_item_id) -> Optional[OrderItem]:
        """Load the item with a row lock held until the transaction ends."""
        return (
            OrderItem.objects.select_for_update(of=('self',))
            .select_related('store', 'product', 'suggested_product', 'order')
            .filter(pk=order_item_id)
            .first()
        )

    def save(self, item: OrderItem) -> OrderItem:
        item.save()
        return item

    def pending_for_stores(self, store_ids):
        return (
            OrderItem.objects.select_related('product', 'store', 'order', 'order__customer')
            .filter(store_id__in=store_ids, store_status=OrderItem.StoreStatus.PENDING)
            .order_by('-order__created_at', 'id')
        )


class OrderRepository:

    def find(self, order_id) -> Optional[Order]:
        return Order.objects.filter(pk=order_id).first()

    def find_for_update(self, order_id) -> Optional[Order]:
        return Order.objects.select_for_update().filter(pk=order_id).first()

    def save_total(self, order: Order) -> Order:
        """Write only the derived total; status and notes belong to other writers."""
        order.save(update_fields=['total_amount', 'updated_at'])
        return order

    def recalculate_and_save(self, order: Optional[Order]) -> Optional[Order]:
        if order is None:
            return None
        order.recalculate_total()
        return self.save_total(order)


class ProductRepository:

    def find(self, product_id) -> Optional[Product]:
        return Product.objects.filter(pk=product_id).first()


class StoreProductLookup:
    """Reads store bindings; the workflow never writes them."""

    def binding_for(self, store: Store, product: Product) -> Optional[StoreProduct]:
        if store is None or product is None:
            return None
        return StoreProduct.objects.filter(store=store, product=product).first()

    def price_for(self, store: Store, product: Product) -> Optional[Decimal]:
        binding = self.binding_for(store, product)
        return binding.price if binding is not None else None
