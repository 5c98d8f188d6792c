"""
Order Models - Order and OrderItem entities with store negotiation tracking.

OrderItem store status flow:
    PENDING   -> ACCEPTED  (store accepts at its own price)
    PENDING   -> REFUSED   (store refuses, reason required)
    PENDING   -> SUGGESTED (store proposes a substitute product)
    SUGGESTED -> PENDING   (admin approves; product swapped, awaits a fresh accept)

ACCEPTED and REFUSED are terminal for the negotiation.
"""
import random
from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone

from catalog.models import Store, Product


def generate_order_reference() -> str:
    return f"ORD-{timezone.now().year}-{random.randint(1, 999999):06d}"


class Order(models.Model):
    """
    Customer order. Owns its items; `total_amount` is derived from them
    and recomputed after every item mutation.
    """

    class Status(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        CONFIRMED = 'CONFIRMED', 'Confirmed'
        CANCELLED = 'CANCELLED', 'Cancelled'

    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='orders',
        help_text="Customer who placed the order"
    )
    reference = models.CharField(
        max_length=32,
        unique=True,
        default=generate_order_reference,
        help_text="Human readable order reference"
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True
    )
    notes = models.TextField(blank=True, default='')
    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00'),
        help_text="Sum of item line totals, refused items excluded"
    )
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Order'
        verbose_name_plural = 'Orders'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['customer', 'status'], name='order_customer_status_idx'),
            models.Index(fields=['status', 'created_at'], name='order_status_created_idx'),
        ]

    def __str__(self):
        return f"Order {self.reference} ({self.status})"

    @property
    def item_count(self) -> int:
        return self.items.count()

    def recalculate_total(self) -> Decimal:
        """Recompute and assign `total_amount`. The caller saves."""
        total = sum((item.line_total for item in self.items.all()), Decimal('0.00'))
        self.total_amount = total
        return total


class OrderItem(models.Model):
    """
    One line of an order, negotiated with the store expected to fulfil it.

    `unit_price` is the price known when the item was placed (store binding
    if any, else catalog price). `store_price` is the price committed by the
    store and is only set while ACCEPTED or SUGGESTED.
    """

    class StoreStatus(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        ACCEPTED = 'ACCEPTED', 'Accepted'
        REFUSED = 'REFUSED', 'Refused'
        SUGGESTED = 'SUGGESTED', 'Suggested'

    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='items',
        help_text="Parent order"
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='order_items',
        help_text="Requested product"
    )
    suggested_product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='suggested_in_items',
        null=True,
        blank=True,
        help_text="Substitute proposed by the store"
    )
    store = models.ForeignKey(
        Store,
        on_delete=models.PROTECT,
        related_name='order_items',
        help_text="Store expected to fulfil this item"
    )
    quantity = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
        help_text="Quantity ordered"
    )
    unit_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Price per unit at time of order"
    )
    store_status = models.CharField(
        max_length=20,
        choices=StoreStatus.choices,
        default=StoreStatus.PENDING,
        db_index=True
    )
    store_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Price committed by the store"
    )
    store_notes = models.TextField(null=True, blank=True)
    store_suggestion = models.TextField(null=True, blank=True)
    store_action_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Order Item'
        verbose_name_plural = 'Order Items'
        ordering = ['id']
        indexes = [
            models.Index(fields=['store', 'store_status'], name='item_store_status_idx'),
        ]

    def __str__(self):
        return f"{self.quantity}x {self.product.name} @ {self.store.name} ({self.store_status})"

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.unit_price

    @property
    def line_total(self) -> Decimal:
        """Contribution of this item to the order total."""
        if self.store_status == self.StoreStatus.REFUSED:
            return Decimal('0.00')
        if self.store_status == self.StoreStatus.ACCEPTED and self.store_price is not None:
            return self.quantity * self.store_price
        return self.subtotal

    def mark_accepted(self, price: Decimal, notes=None):
        self.store_status = self.StoreStatus.ACCEPTED
        self.store_price = price
        if notes:
            self.store_notes = notes
        self.store_action_at = timezone.now()

    def mark_refused(self, reason: str):
        self.store_status = self.StoreStatus.REFUSED
        self.store_notes = reason
        self.store_action_at = timezone.now()

    def mark_suggested(self, product: Product, price: Decimal, suggestion=None, notes=None):
        self.store_status = self.StoreStatus.SUGGESTED
        self.suggested_product = product
        self.store_price = price
        if suggestion:
            self.store_suggestion = suggestion
        if notes:
            self.store_notes = notes
        self.store_action_at = timezone.now()

    def apply_approved_suggestion(self, admin_notes=None):
        """Swap in the suggested product and reopen the item for the store."""
        self.product = self.suggested_product
        self.store_status = self.StoreStatus.PENDING
        if admin_notes:
            self.store_notes = f"{self.store_notes or ''}\n[Admin Approved]: {admin_notes}"
        self.suggested_product = None
        self.store_price = None
        self.store_action_at = timezone.now()
