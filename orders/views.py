"""
Order API Views.

Implements:
- GET  /orders/                                  - Orders of the current customer
- POST /orders/                                  - Place an order
- GET  /orders/{id}/                             - Order detail with items
- POST /orders/{id}/store-actions/               - Batch store actions on one order
- POST /order-items/{id}/accept/                 - Store accepts an item
- POST /order-items/{id}/refuse/                 - Store refuses an item
- POST /order-items/{id}/suggest/                - Store suggests a substitute
- POST /order-items/{id}/approve-suggestion/     - Admin approves a suggestion
- GET  /order-items/pending/                     - Pending items of the owner's stores
- GET  /order-items/stats/                       - Negotiation statistics
"""
import logging

from django.db.models import Q
from rest_framework import generics, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.rate_limiting import RateLimitMixin
from . import negotiation
from .actors import actor_for_request
from .exceptions import NegotiationError, Forbidden
from .models import Order, OrderItem
from .serializers import (
    AcceptOrderItemSerializer,
    ApproveSuggestionSerializer,
    OrderCreateSerializer,
    OrderItemSerializer,
    OrderListSerializer,
    OrderSerializer,
    PendingOrderItemSerializer,
    RefuseOrderItemSerializer,
    StoreUpdateOrderSerializer,
    SuggestOrderItemSerializer,
)
from .services import negotiation_stats, place_order

logger = logging.getLogger(__name__)


def error_response(exc: NegotiationError) -> Response:
    return Response(
        {'error': exc.title, 'detail': str(exc)},
        status=exc.status_code
    )


def server_error_response() -> Response:
    return Response(
        {'error': 'Server Error', 'detail': 'An unexpected error occurred'},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR
    )


def visible_orders(actor):
    """Admins see every order; others see their own and those routed to their stores."""
    queryset = Order.objects.all()
    if actor.is_admin:
        return queryset
    return queryset.filter(
        Q(customer_id=actor.user_id) | Q(items__store_id__in=actor.store_ids)
    ).distinct()


class OrderListCreateView(generics.ListCreateAPIView):
    """
    GET: List visible orders

    Query Parameters (GET):
        - status: Filter by order status

    POST: Place an order
    {
        "items": [{"product_id": 1, "store_id": 2, "quantity": 2}],
        "notes": ""
    }
    """

    def get_serializer_class(self):
        if self.request.method == 'POST':
            return OrderCreateSerializer
        return OrderListSerializer

    def get_queryset(self):
        queryset = visible_orders(actor_for_request(self.request)).prefetch_related('items')

        status_filter = self.request.query_params.get('status', '').upper()
        if status_filter in Order.Status.values:
            queryset = queryset.filter(status=status_filter)

        return queryset.order_by('-created_at')

    def create(self, request, *args, **kwargs):
        """
        Returns:
            - 201: Order placed, all items PENDING
            - 400: Validation error
        """
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            order = place_order(
                actor_for_request(request),
                serializer.validated_data['items'],
                serializer.validated_data.get('notes', ''),
            )
        except NegotiationError as e:
            logger.warning(f"Order placement failed: {e}")
            return error_response(e)
        except Exception as e:
            logger.exception(f"Unexpected error placing order: {e}")
            return server_error_response()

        order = Order.objects.prefetch_related(
            'items__product', 'items__store', 'items__suggested_product'
        ).get(id=order.id)
        return Response(OrderSerializer(order).data, status=status.HTTP_201_CREATED)


class OrderDetailView(generics.RetrieveAPIView):
    serializer_class = OrderSerializer

    def get_queryset(self):
        return visible_orders(actor_for_request(self.request)).prefetch_related(
            'items__product', 'items__store', 'items__suggested_product'
        )


class NegotiationView(RateLimitMixin, APIView):
    """
    Base for single-item negotiation endpoints: validates the body with
    `request_serializer_class`, runs `perform()` and returns the item.
    """
    request_serializer_class = None
    rate_limit_max_requests = 60
    rate_limit_window_seconds = 60

    def perform(self, actor, pk, data):
        raise NotImplementedError

    def post(self, request, pk):
        serializer = self.request_serializer_class(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            actor = actor_for_request(request)
            item = self.perform(actor, pk, serializer.validated_data)
        except NegotiationError as e:
            logger.warning(f"{self.__class__.__name__} on order item #{pk} rejected: {e}")
            return error_response(e)
        except Exception as e:
            logger.exception(f"Unexpected error in {self.__class__.__name__} for order item #{pk}: {e}")
            return server_error_response()

        return Response(OrderItemSerializer(item).data)


class AcceptOrderItemView(NegotiationView):
    request_serializer_class = AcceptOrderItemSerializer

    def perform(self, actor, pk, data):
        return negotiation.accept_order_item(pk, actor, notes=data.get('notes'))


class RefuseOrderItemView(NegotiationView):
    request_serializer_class = RefuseOrderItemSerializer

    def perform(self, actor, pk, data):
        return negotiation.refuse_order_item(pk, actor, reason=data['reason'])


class SuggestOrderItemView(NegotiationView):
    request_serializer_class = SuggestOrderItemSerializer

    def perform(self, actor, pk, data):
        return negotiation.suggest_order_item(
            pk, actor,
            suggested_product_id=data['suggested_product_id'],
            suggestion=data.get('suggestion'),
            notes=data.get('notes'),
        )


class ApproveSuggestionView(NegotiationView):
    request_serializer_class = ApproveSuggestionSerializer

    def perform(self, actor, pk, data):
        return negotiation.approve_suggestion(pk, actor, admin_notes=data.get('admin_notes'))


class StoreUpdateOrderView(RateLimitMixin, APIView):
    """
    POST: Apply several store actions to items of one order.
    {
        "actions": [
            {"order_item_id": 1, "action": "accept", "notes": "In stock"},
            {"order_item_id": 2, "action": "refuse", "reason": "Discontinued"},
            {"order_item_id": 3, "action": "suggest", "suggested_product_id": 9}
        ]
    }
    """

    def post(self, request, pk):
        serializer = StoreUpdateOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        actions = [negotiation.StoreAction(**entry) for entry in serializer.validated_data['actions']]
        try:
            order = negotiation.apply_store_actions(pk, actor_for_request(request), actions)
        except NegotiationError as e:
            logger.warning(f"Store update on order #{pk} rejected: {e}")
            return error_response(e)
        except Exception as e:
            logger.exception(f"Unexpected error updating order #{pk}: {e}")
            return server_error_response()

        order = Order.objects.prefetch_related(
            'items__product', 'items__store', 'items__suggested_product'
        ).get(id=order.id)
        return Response(OrderSerializer(order).data)


class PendingOrderItemsView(APIView):
    """
    GET: PENDING items routed to the current user's stores.

    Query Parameters:
        - page: Page number (default 1)
        - limit: Page size, 1 to 100 (default 20)
    """

    def get(self, request):
        try:
            page = int(request.query_params.get('page', 1))
            limit = int(request.query_params.get('limit', 20))
        except ValueError:
            return Response(
                {'error': 'Validation Error', 'detail': 'page and limit must be integers'},
                status=status.HTTP_400_BAD_REQUEST
            )

        try:
            items = negotiation.pending_items_for_store(actor_for_request(request), page, limit)
        except NegotiationError as e:
            return error_response(e)

        return Response(PendingOrderItemSerializer(items, many=True).data)


class NegotiationStatsView(APIView):
    """
    GET: Item counts per store status and accepted revenue.

    Admins see every store; store owners only their own.

    Query Parameters:
        - store_id: Restrict to one store
    """

    def get(self, request):
        try:
            actor = actor_for_request(request)
            queryset = OrderItem.objects.all()
            if not actor.is_admin:
                if not actor.is_store_owner:
                    raise Forbidden('Only admins and store owners can view negotiation statistics')
                queryset = queryset.filter(store_id__in=actor.store_ids)
        except NegotiationError as e:
            return error_response(e)

        store_id = request.query_params.get('store_id')
        if store_id:
            try:
                store_id = int(store_id)
            except ValueError:
                return Response(
                    {'error': 'Validation Error', 'detail': 'store_id must be an integer'},
                    status=status.HTTP_400_BAD_REQUEST
                )
            queryset = queryset.filter(store_id=store_id)

        return Response(negotiation_stats(queryset))
