"""
Catalog API Views with optimized queries.

Implements:
- CRUD operations for Category, Product, Store, StoreProduct
- Product search with keyword and filter support
- Autocomplete with rate limiting (used by stores picking a substitute)
"""
from decimal import Decimal, InvalidOperation

from django.db.models import Q
from rest_framework import generics, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.rate_limiting import rate_limit
from .models import Category, Product, Store, StoreProduct
from .permissions import IsAdminOrReadOnly
from .serializers import (
    CategorySerializer,
    ProductSerializer,
    ProductMinimalSerializer,
    StoreSerializer,
    StoreProductSerializer,
)


def _decimal_param(value):
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError):
        return None


def _int_param(value):
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


class IntegerFilterMixin:
    """Reject non-integer id filters with a 400 before the queryset is built."""
    integer_filters = ()

    def list(self, request, *args, **kwargs):
        for name in self.integer_filters:
            value = request.query_params.get(name)
            if value and _int_param(value) is None:
                return Response(
                    {'error': 'Validation Error', 'detail': f'{name} must be an integer'},
                    status=status.HTTP_400_BAD_REQUEST
                )
        return super().list(request, *args, **kwargs)


# =============================================================================
# Category Views
# =============================================================================

class CategoryListCreateView(generics.ListCreateAPIView):
    """
    GET: List all categories
    POST: Create a new category
    """
    queryset = Category.objects.all()
    serializer_class = CategorySerializer
    permission_classes = [IsAdminOrReadOnly]


class CategoryDetailView(generics.RetrieveUpdateDestroyAPIView):
    queryset = Category.objects.all()
    serializer_class = CategorySerializer
    permission_classes = [IsAdminOrReadOnly]


# =============================================================================
# Product Views
# =============================================================================

class ProductListCreateView(generics.ListCreateAPIView):
    """
    GET: List active products with category info
    POST: Create a new product
    """
    serializer_class = ProductSerializer
    permission_classes = [IsAdminOrReadOnly]

    def get_queryset(self):
        return Product.objects.select_related('category').filter(is_active=True)


class ProductDetailView(generics.RetrieveUpdateDestroyAPIView):
    serializer_class = ProductSerializer
    permission_classes = [IsAdminOrReadOnly]

    def get_queryset(self):
        return Product.objects.select_related('category')


class ProductSearchView(IntegerFilterMixin, generics.ListAPIView):
    """
    GET: Search products with keyword and filters.

    Query Parameters:
        - q: Keyword to search in name, description, and category name
        - category_id: Filter by category ID
        - min_price / max_price: Catalog price range
        - store_id: Only products the store has a binding for
    """
    serializer_class = ProductSerializer
    integer_filters = ('category_id', 'store_id')

    def get_queryset(self):
        queryset = Product.objects.select_related('category').filter(is_active=True)

        keyword = self.request.query_params.get('q', '').strip()
        if keyword:
            queryset = queryset.filter(
                Q(name__icontains=keyword) |
                Q(description__icontains=keyword) |
                Q(category__name__icontains=keyword)
            )

        category_id = self.request.query_params.get('category_id')
        if category_id:
            queryset = queryset.filter(category_id=category_id)

        min_price = _decimal_param(self.request.query_params.get('min_price'))
        if min_price is not None:
            queryset = queryset.filter(price__gte=min_price)

        max_price = _decimal_param(self.request.query_params.get('max_price'))
        if max_price is not None:
            queryset = queryset.filter(price__lte=max_price)

        store_id = self.request.query_params.get('store_id')
        if store_id:
            queryset = queryset.filter(
                store_products__store_id=store_id,
                store_products__price__gt=0
            ).distinct()

        return queryset.order_by('name')


class ProductAutocompleteView(APIView):
    """
    GET: Prefix-matching autocomplete for product names.

    Query Parameters:
        - q: Search query (minimum 3 characters)

    Returns top 10 matching products.
    """

    @rate_limit(max_requests=20, window_seconds=60)
    def get(self, request):
        query = request.query_params.get('q', '').strip()

        if len(query) < 3:
            return Response(
                {'error': 'Validation Error', 'detail': 'Query must be at least 3 characters'},
                status=status.HTTP_400_BAD_REQUEST
            )

        products = Product.objects.filter(
            name__istartswith=query,
            is_active=True
        )[:10]

        return Response(ProductMinimalSerializer(products, many=True).data)


# =============================================================================
# Store Views
# =============================================================================

class StoreListCreateView(generics.ListCreateAPIView):
    queryset = Store.objects.filter(is_active=True)
    serializer_class = StoreSerializer
    permission_classes = [IsAdminOrReadOnly]


class StoreDetailView(generics.RetrieveUpdateDestroyAPIView):
    queryset = Store.objects.all()
    serializer_class = StoreSerializer
    permission_classes = [IsAdminOrReadOnly]


# =============================================================================
# Store Product Views
# =============================================================================

class StoreProductListCreateView(IntegerFilterMixin, generics.ListCreateAPIView):
    """
    GET: List store bindings with store and product info
    POST: Create a binding

    Query Parameters:
        - store_id: Filter by store
        - product_id: Filter by product
    """
    serializer_class = StoreProductSerializer
    permission_classes = [IsAdminOrReadOnly]
    integer_filters = ('store_id', 'product_id')

    def get_queryset(self):
        queryset = StoreProduct.objects.select_related('store', 'product')

        store_id = self.request.query_params.get('store_id')
        if store_id:
            queryset = queryset.filter(store_id=store_id)

        product_id = self.request.query_params.get('product_id')
        if product_id:
            queryset = queryset.filter(product_id=product_id)

        return queryset.order_by('store__name', 'product__name')


class StoreProductDetailView(generics.RetrieveUpdateDestroyAPIView):
    serializer_class = StoreProductSerializer
    permission_classes = [IsAdminOrReadOnly]

    def get_queryset(self):
        return StoreProduct.objects.select_related('store', 'product')
