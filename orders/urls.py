"""
URL routing for order and negotiation API endpoints.
"""
from django.urls import path
from . import views

app_name = 'orders'

urlpatterns = [
    path('orders/', views.OrderListCreateView.as_view(), name='order-list'),
    path('orders/<int:pk>/', views.OrderDetailView.as_view(), name='order-detail'),
    path('orders/<int:pk>/store-actions/', views.StoreUpdateOrderView.as_view(), name='order-store-actions'),

    path('order-items/pending/', views.PendingOrderItemsView.as_view(), name='order-item-pending'),
    path('order-items/stats/', views.NegotiationStatsView.as_view(), name='order-item-stats'),
    path('order-items/<int:pk>/accept/', views.AcceptOrderItemView.as_view(), name='order-item-accept'),
    path('order-items/<int:pk>/refuse/', views.RefuseOrderItemView.as_view(), name='order-item-refuse'),
    path('order-items/<int:pk>/suggest/', views.SuggestOrderItemView.as_view(), name='order-item-suggest'),
    path(
        'order-items/<int:pk>/approve-suggestion/',
        views.ApproveSuggestionView.as_view(),
        name='order-item-approve-suggestion'
    ),
]
