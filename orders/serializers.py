"""
Serializers for order models and negotiation requests.
"""
from rest_framework import serializers

from catalog.serializers import ProductMinimalSerializer, StoreMinimalSerializer
from .models import Order, OrderItem
from .negotiation import STORE_ACTIONS


class OrderItemSerializer(serializers.ModelSerializer):
    """Order item with product, store and negotiation state."""
    product = ProductMinimalSerializer(read_only=True)
    suggested_product = ProductMinimalSerializer(read_only=True)
    store = StoreMinimalSerializer(read_only=True)
    order_id = serializers.IntegerField(read_only=True)
    line_total = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = OrderItem
        fields = [
            'id', 'order_id', 'product', 'suggested_product', 'store',
            'quantity', 'unit_price', 'line_total',
            'store_status', 'store_price', 'store_notes',
            'store_suggestion', 'store_action_at',
        ]
        read_only_fields = fields


class PendingOrderItemSerializer(OrderItemSerializer):
    """Pending item as listed to a store owner, with its order context."""
    order_reference = serializers.CharField(source='order.reference', read_only=True)
    ordered_at = serializers.DateTimeField(source='order.created_at', read_only=True)

    class Meta(OrderItemSerializer.Meta):
        fields = OrderItemSerializer.Meta.fields + ['order_reference', 'ordered_at']
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    """Order with nested items."""
    items = OrderItemSerializer(many=True, read_only=True)
    item_count = serializers.IntegerField(read_only=True)

    class Meta:
        model = Order
        fields = [
            'id', 'reference', 'status', 'notes', 'total_amount',
            'items', 'item_count', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class OrderListSerializer(serializers.ModelSerializer):
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = ['id', 'reference', 'status', 'total_amount', 'item_count', 'created_at']

    def get_item_count(self, obj):
        # Use prefetched items count if available
        if hasattr(obj, '_prefetched_objects_cache') and 'items' in obj._prefetched_objects_cache:
            return len(obj.items.all())
        return obj.items.count()


class OrderItemCreateSerializer(serializers.Serializer):
    product_id = serializers.IntegerField(min_value=1)
    store_id = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1)


class OrderCreateSerializer(serializers.Serializer):
    """
    Request format for POST /orders/:
    {
        "items": [
            {"product_id": 1, "store_id": 2, "quantity": 2},
            {"product_id": 3, "store_id": 2, "quantity": 1}
        ],
        "notes": "Leave at the front desk"
    }
    """
    items = OrderItemCreateSerializer(many=True)
    notes = serializers.CharField(required=False, allow_blank=True, default='')

    def validate_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one item is required")
        return value


# =============================================================================
# Negotiation requests
# =============================================================================

class AcceptOrderItemSerializer(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class RefuseOrderItemSerializer(serializers.Serializer):
    reason = serializers.CharField(
        error_messages={'blank': 'Reason is required for refusing an order item',
                        'required': 'Reason is required for refusing an order item'}
    )


class SuggestOrderItemSerializer(serializers.Serializer):
    suggested_product_id = serializers.IntegerField(
        min_value=1,
        error_messages={'required': 'Suggested product ID is required'}
    )
    suggestion = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class ApproveSuggestionSerializer(serializers.Serializer):
    admin_notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class StoreActionSerializer(serializers.Serializer):
    order_item_id = serializers.IntegerField(min_value=1)
    action = serializers.ChoiceField(choices=STORE_ACTIONS)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    suggested_product_id = serializers.IntegerField(required=False, min_value=1, allow_null=True)
    suggestion = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    def validate(self, attrs):
        if attrs['action'] == 'refuse' and not (attrs.get('reason') or '').strip():
            raise serializers.ValidationError(
                {'reason': 'Reason is required for refusing an order item'}
            )
        if attrs['action'] == 'suggest' and not attrs.get('suggested_product_id'):
            raise serializers.ValidationError(
                {'suggested_product_id': 'Suggested product ID is required for suggesting an alternative'}
            )
        return attrs


class StoreUpdateOrderSerializer(serializers.Serializer):
    actions = StoreActionSerializer(many=True, allow_empty=False)
