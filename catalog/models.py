"""
Catalog Models - Products offered on the marketplace and the stores that sell them.

Models:
    - Category: Product categorization
    - Product: Items customers can order
    - Store: Partner pharmacies, operated by one or more owner accounts
    - StoreProduct: Store binding - the price a store charges for a product
      (unique per store and product)
"""
from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models


class Category(models.Model):
    """
    Product category for organizing the catalog.
    """
    name = models.CharField(
        max_length=100,
        unique=True,
        db_index=True,
        help_text="Unique category name"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Category'
        verbose_name_plural = 'Categories'
        ordering = ['name']

    def __str__(self):
        return self.name


class Product(models.Model):
    """
    Product entity. `price` is the catalog reference price; the price a
    customer actually pays is set by the fulfilling store's binding.
    """
    name = models.CharField(
        max_length=200,
        db_index=True,
        help_text="Product name for display and search"
    )
    description = models.TextField(
        blank=True,
        default='',
        help_text="Optional product description"
    )
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))],
        help_text="Catalog reference price"
    )
    category = models.ForeignKey(
        Category,
        on_delete=models.CASCADE,
        related_name='products',
        help_text="Product category"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether product can be ordered"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Product'
        verbose_name_plural = 'Products'
        ordering = ['name']
        indexes = [
            models.Index(fields=['name', 'is_active'], name='product_name_active_idx'),
            models.Index(fields=['category', 'is_active'], name='product_category_active_idx'),
        ]

    def __str__(self):
        return self.name


class Store(models.Model):
    """
    Partner store (pharmacy). Owners are the user accounts allowed to act on
    the store's order items.
    """
    name = models.CharField(
        max_length=200,
        db_index=True,
        help_text="Store name"
    )
    location = models.CharField(
        max_length=300,
        blank=True,
        default='',
        help_text="Store address"
    )
    owners = models.ManyToManyField(
        settings.AUTH_USER_MODEL,
        related_name='owned_stores',
        blank=True,
        help_text="Accounts operating this store"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether store accepts orders"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Store'
        verbose_name_plural = 'Stores'
        ordering = ['name']

    def __str__(self):
        return self.name


class StoreProduct(models.Model):
    """
    Store binding linking a store and a product with the store's price.

    Constraint: exactly one binding per product per store.
    """
    store = models.ForeignKey(
        Store,
        on_delete=models.CASCADE,
        related_name='store_products',
        help_text="Store selling the product"
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.CASCADE,
        related_name='store_products',
        help_text="Product sold"
    )
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Price charged by this store"
    )
    stock = models.PositiveIntegerField(
        default=0,
        help_text="Units on hand"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Store Product'
        verbose_name_plural = 'Store Products'
        ordering = ['store', 'product']
        constraints = [
            models.UniqueConstraint(
                fields=['store', 'product'],
                name='unique_store_product_binding'
            )
        ]

    def __str__(self):
        return f"{self.product.name} @ {self.store.name}: {self.price}"

    @property
    def has_valid_price(self) -> bool:
        return self.price is not None and self.price > 0
