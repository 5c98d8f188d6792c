"""
Django Admin configuration for catalog models.
"""
from django.contrib import admin
from .models import Category, Product, Store, StoreProduct


@admin.register(Category)
class CategoryAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'product_count', 'created_at']
    search_fields = ['name']
    ordering = ['name']

    def product_count(self, obj):
        return obj.products.count()
    product_count.short_description = 'Products'


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'price', 'category', 'is_active', 'created_at']
    list_filter = ['category', 'is_active']
    search_fields = ['name', 'description']
    ordering = ['name']
    raw_id_fields = ['category']


class StoreProductInline(admin.TabularInline):
    model = StoreProduct
    extra = 0
    raw_id_fields = ['product']


@admin.register(Store)
class StoreAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'location', 'is_active', 'created_at']
    list_filter = ['is_active']
    search_fields = ['name', 'location']
    ordering = ['name']
    filter_horizontal = ['owners']
    inlines = [StoreProductInline]


@admin.register(StoreProduct)
class StoreProductAdmin(admin.ModelAdmin):
    list_display = ['id', 'store', 'product', 'price', 'stock', 'updated_at']
    list_filter = ['store']
    search_fields = ['product__name', 'store__name']
    ordering = ['store', 'product']
    raw_id_fields = ['store', 'product']
