"""
URL routing for catalog API endpoints.
"""
from django.urls import path
from . import views

app_name = 'catalog'

urlpatterns = [
    # Categories
    path('categories/', views.CategoryListCreateView.as_view(), name='category-list'),
    path('categories/<int:pk>/', views.CategoryDetailView.as_view(), name='category-detail'),

    # Products
    path('products/', views.ProductListCreateView.as_view(), name='product-list'),
    path('products/search/', views.ProductSearchView.as_view(), name='product-search'),
    path('products/autocomplete/', views.ProductAutocompleteView.as_view(), name='product-autocomplete'),
    path('products/<int:pk>/', views.ProductDetailView.as_view(), name='product-detail'),

    # Stores
    path('stores/', views.StoreListCreateView.as_view(), name='store-list'),
    path('stores/<int:pk>/', views.StoreDetailView.as_view(), name='store-detail'),

    # Store bindings
    path('store-products/', views.StoreProductListCreateView.as_view(), name='store-product-list'),
    path('store-products/<int:pk>/', views.StoreProductDetailView.as_view(), name='store-product-detail'),
]
