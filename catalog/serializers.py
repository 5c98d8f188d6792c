"""
Serializers for catalog models.
Provides data validation and JSON conversion for API endpoints.
"""
from rest_framework import serializers
from .models import Category, Product, Store, StoreProduct


class CategorySerializer(serializers.ModelSerializer):
    """Serializer for Category model."""
    product_count = serializers.SerializerMethodField()

    class Meta:
        model = Category
        fields = ['id', 'name', 'product_count', 'created_at', 'updated_at']
        read_only_fields = ['id', 'created_at', 'updated_at']

    def get_product_count(self, obj):
        return obj.products.count()


class CategoryMinimalSerializer(serializers.ModelSerializer):
    class Meta:
        model = Category
        fields = ['id', 'name']


class ProductSerializer(serializers.ModelSerializer):
    """Serializer for Product model with nested category."""
    category = CategoryMinimalSerializer(read_only=True)
    category_id = serializers.PrimaryKeyRelatedField(
        queryset=Category.objects.all(),
        source='category',
        write_only=True
    )

    class Meta:
        model = Product
        fields = [
            'id', 'name', 'description', 'price',
            'category', 'category_id', 'is_active',
            'created_at', 'updated_at'
        ]
        read_only_fields = ['id', 'created_at', 'updated_at']


class ProductMinimalSerializer(serializers.ModelSerializer):
    """Minimal serializer for autocomplete and nested representations."""
    class Meta:
        model = Product
        fields = ['id', 'name', 'price']


class StoreSerializer(serializers.ModelSerializer):
    """Serializer for Store model. Owners are managed through the admin."""
    product_count = serializers.SerializerMethodField()

    class Meta:
        model = Store
        fields = ['id', 'name', 'location', 'is_active', 'product_count', 'created_at', 'updated_at']
        read_only_fields = ['id', 'created_at', 'updated_at']

    def get_product_count(self, obj):
        return obj.store_products.count()


class StoreMinimalSerializer(serializers.ModelSerializer):
    class Meta:
        model = Store
        fields = ['id', 'name', 'location']


class StoreProductSerializer(serializers.ModelSerializer):
    """
    Serializer for store bindings with nested store and product.
    Uses select_related optimization in view.
    """
    store = StoreMinimalSerializer(read_only=True)
    product = ProductMinimalSerializer(read_only=True)
    store_id = serializers.PrimaryKeyRelatedField(
        queryset=Store.objects.all(),
        source='store',
        write_only=True
    )
    product_id = serializers.PrimaryKeyRelatedField(
        queryset=Product.objects.all(),
        source='product',
        write_only=True
    )

    class Meta:
        model = StoreProduct
        fields = [
            'id', 'store', 'store_id', 'product', 'product_id',
            'price', 'stock', 'created_at', 'updated_at'
        ]
        read_only_fields = ['id', 'created_at', 'updated_at']

    def validate_price(self, value):
        if value <= 0:
            raise serializers.ValidationError("Store price must be positive")
        return value

    def validate(self, attrs):
        """Reject a second binding for the same store and product."""
        if self.instance is None:
            store = attrs.get('store')
            product = attrs.get('product')
            if StoreProduct.objects.filter(store=store, product=product).exists():
                raise serializers.ValidationError(
                    "This product is already bound to this store."
                )
        return attrs
