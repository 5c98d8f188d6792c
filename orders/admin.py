"""
Django Admin configuration for order models.
"""
from django.contrib import admin
from .models import Order, OrderItem


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    fk_name = 'order'
    extra = 0
    readonly_fields = [
        'product', 'store', 'quantity', 'unit_price',
        'store_status', 'store_price', 'suggested_product', 'store_action_at',
    ]
    can_delete = False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ['id', 'reference', 'customer', 'status', 'total_amount', 'item_count', 'created_at']
    list_filter = ['status', 'created_at']
    search_fields = ['reference', 'customer__username']
    ordering = ['-created_at']
    readonly_fields = ['reference', 'total_amount', 'created_at', 'updated_at']
    inlines = [OrderItemInline]

    def item_count(self, obj):
        return obj.items.count()
    item_count.short_description = 'Items'


@admin.register(OrderItem)
class OrderItemAdmin(admin.ModelAdmin):
    list_display = ['id', 'order', 'product', 'store', 'quantity', 'store_status', 'store_price', 'store_action_at']
    list_filter = ['store_status', 'store']
    search_fields = ['product__name', 'order__reference', 'store__name']
    ordering = ['-created_at']
    raw_id_fields = ['order', 'product', 'store']
    # Negotiation state only changes through the negotiation endpoints
    readonly_fields = ['store_status', 'store_price', 'suggested_product', 'store_action_at']
