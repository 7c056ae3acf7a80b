"""
Order API Views.

Implements:
- GET /orders/ - List orders with filters
- POST /orders/ - Create order (stock deducted atomically)
- GET /orders/{id}/ - Order detail with items
- PUT/PATCH /orders/{id}/ - Change status and/or payment status
- GET /orders/{id}/history/ - Status audit trail
- GET /orders/{id}/transitions/ - Statuses reachable without override
- GET /orders/stats/ - Order statistics
"""
import logging

from django.db.models import Avg, Count, Q, Sum
from rest_framework import generics, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import StorefrontError, error_response
from inventory.views import parse_boundary
from .models import Order, OrderStatusHistory
from .serializers import (
    OrderSerializer,
    OrderListSerializer,
    OrderCreateSerializer,
    OrderUpdateSerializer,
    OrderStatusHistorySerializer,
)
from .services import create_order, update_order
from .status import ORDER_STATUS_FLOW, OrderStatus, PaymentMethod, PaymentStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

FORCE_PERMISSION = 'orders.force_order_status'


def server_error_response():
    return Response(
        {'error': 'SERVER_ERROR', 'detail': 'An unexpected error occurred', 'data': {}},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR
    )


class OrderListCreateView(generics.ListCreateAPIView):
    """
    GET: List orders, newest first
    POST: Create a new order

    Query Parameters (GET):
        - status, payment_status, payment_method
        - search: Order id, customer name or email, product name
        - start_date / end_date: Creation date range
    """

    def get_serializer_class(self):
        if self.request.method == 'POST':
            return OrderCreateSerializer
        return OrderListSerializer

    def get_queryset(self):
        queryset = Order.objects.prefetch_related('items__product')
        params = self.request.query_params

        status_filter = params.get('status', '').upper()
        if status_filter in OrderStatus.values:
            queryset = queryset.filter(status=status_filter)

        payment_filter = params.get('payment_status', '').upper()
        if payment_filter in PaymentStatus.values:
            queryset = queryset.filter(payment_status=payment_filter)

        method_filter = params.get('payment_method', '').lower()
        if method_filter in PaymentMethod.values:
            queryset = queryset.filter(payment_method=method_filter)

        search = params.get('search', '').strip()
        if search:
            query = (
                Q(customer_name__icontains=search)
                | Q(customer_email__icontains=search)
                | Q(items__product__name__icontains=search)
            )
            if search.lstrip('#').isdigit():
                query |= Q(id=int(search.lstrip('#')))
            queryset = queryset.filter(query).distinct()

        start = parse_boundary(params.get('start_date', ''))
        if start:
            queryset = queryset.filter(created_at__gte=start)
        end = parse_boundary(params.get('end_date', ''), end_of_day=True)
        if end:
            queryset = queryset.filter(created_at__lte=end)

        return queryset.order_by('-created_at')

    def create(self, request, *args, **kwargs):
        """
        Returns:
            - 201: Order created in PENDING
            - 400: Validation error
            - 409: Insufficient stock
        """
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            order = create_order(
                [dict(item) for item in data['items']],
                customer_name=data['customer_name'],
                customer_email=data['customer_email'],
                payment_method=data['payment_method'],
                payment_reference=data['payment_reference'],
                notes=data['notes'],
                actor=request.user,
            )
        except StorefrontError as e:
            return error_response(e)
        except Exception as e:
            logger.exception(f"Unexpected error creating order: {e}")
            return server_error_response()

        order = Order.objects.prefetch_related('items__product', 'items__variant').get(id=order.id)
        return Response(OrderSerializer(order).data, status=status.HTTP_201_CREATED)


class OrderDetailView(generics.RetrieveUpdateAPIView):
    """
    GET: Retrieve order details with all items
    PUT/PATCH: Change status and/or payment status

    Request Body (PUT/PATCH):
    {
        "status": "CONFIRMED",
        "payment_status": "PAID",
        "force": false
    }

    force=true skips the status flow check and needs the
    orders.force_order_status permission.
    """
    serializer_class = OrderSerializer

    def get_queryset(self):
        return Order.objects.prefetch_related('items__product', 'items__variant')

    def update(self, request, *args, **kwargs):
        serializer = OrderUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        if data['force'] and not request.user.has_perm(FORCE_PERMISSION):
            logger.warning(f"User {request.user} attempted a status override without permission")
            return Response(
                {'error': 'FORBIDDEN', 'detail': 'Status override requires administrator privilege', 'data': {}},
                status=status.HTTP_403_FORBIDDEN
            )

        try:
            update_order(
                kwargs['pk'],
                status=data.get('status'),
                payment_status=data.get('payment_status'),
                force=data['force'],
                actor=request.user,
                note=data['note'],
            )
        except StorefrontError as e:
            return error_response(e)
        except Exception as e:
            logger.exception(f"Unexpected error updating order #{kwargs['pk']}: {e}")
            return server_error_response()

        return Response(OrderSerializer(self.get_object()).data)


class OrderHistoryView(generics.ListAPIView):
    """GET: Status changes of an order, oldest first."""
    serializer_class = OrderStatusHistorySerializer
    pagination_class = None

    def get_queryset(self):
        generics.get_object_or_404(Order, pk=self.kwargs['pk'])
        return OrderStatusHistory.objects.select_related('actor').filter(
            order_id=self.kwargs['pk']
        )


class OrderTransitionsView(APIView):
    """
    GET: Statuses the order can move to.

    'allowed' needs no override; 'override' lists every other status.
    """

    def get(self, request, pk):
        order = generics.get_object_or_404(Order, pk=pk)
        current = OrderStatus(order.status)
        allowed = ORDER_STATUS_FLOW[current]
        return Response({
            'current': current.value,
            'terminal': current in TERMINAL_STATUSES,
            'allowed': sorted(s.value for s in allowed),
            'override': sorted(
                s for s in OrderStatus.values if s != current and s not in allowed
            ),
        })


class OrderStatsView(APIView):
    """
    GET: Order statistics.

    Revenue excludes cancelled and returned orders.
    """

    def get(self, request):
        counts = {
            f"{s.lower()}_orders": Count('id', filter=Q(status=s))
            for s in OrderStatus.values
        }
        live = ~Q(status__in=[OrderStatus.CANCELLED, OrderStatus.RETURNED])
        stats = Order.objects.aggregate(
            total_orders=Count('id'),
            paid_orders=Count('id', filter=Q(payment_status=PaymentStatus.PAID)),
            total_revenue=Sum('total', filter=live),
            avg_order_value=Avg('total', filter=live),
            **counts
        )

        stats['total_revenue'] = str(stats['total_revenue'] or '0.00')
        stats['avg_order_value'] = str(round(stats['avg_order_value'] or 0, 2))

        return Response(stats)
