"""
Inventory API Views with optimized queries.

Implements:
- CRUD operations for Category and Product, product variants
- Product search and autocomplete
- Stock movement ledger: list, detail, and admin adjustments
- Product stock table and inventory statistics
"""
import logging
from datetime import datetime, time

from django.db.models import Count, F, Max, Q
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from rest_framework import generics, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import StorefrontError, error_response
from core.models import ProductSettings
from core.rate_limiting import RateLimitMixin, rate_limit
from core.transactions import run_in_transaction
from .ledger import MovementType
from .models import Category, Product, ProductVariant, StockMovement
from .serializers import (
    CategorySerializer,
    ProductSerializer,
    ProductSearchSerializer,
    ProductInventorySerializer,
    ProductVariantSerializer,
    StockMovementSerializer,
    StockAdjustmentSerializer,
)
from .services import adjust_stock, get_inventory_stats

logger = logging.getLogger(__name__)

MOVEMENT_SORT_FIELDS = {
    'created_at': 'created_at',
    'quantity': 'quantity',
    'product_name': 'product__name',
}


def parse_boundary(value: str, end_of_day: bool = False):
    """Parse an ISO date or datetime query parameter into an aware datetime."""
    if not value:
        return None
    moment = parse_datetime(value)
    if moment is None:
        day = parse_date(value)
        if day is None:
            return None
        moment = datetime.combine(day, time.max if end_of_day else time.min)
    if timezone.is_naive(moment):
        moment = timezone.make_aware(moment)
    return moment


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


class CategoryDetailView(generics.RetrieveUpdateDestroyAPIView):
    """
    GET: Retrieve a category
    PUT/PATCH: Update a category
    DELETE: Delete a category without products
    """
    queryset = Category.objects.all()
    serializer_class = CategorySerializer

    def destroy(self, request, *args, **kwargs):
        category = self.get_object()
        if category.products.exists():
            return Response(
                {'error': 'VALIDATION_ERROR', 'detail': 'Category still has products', 'data': {}},
                status=status.HTTP_400_BAD_REQUEST
            )
        return super().destroy(request, *args, **kwargs)


# =============================================================================
# Product Views
# =============================================================================

class ProductListCreateView(generics.ListCreateAPIView):
    """
    GET: List active products with category info
    POST: Create a product; initial_stock is recorded as an IN movement

    Uses select_related to eliminate N+1 queries.
    """
    serializer_class = ProductSerializer

    def get_queryset(self):
        return Product.objects.select_related('category').prefetch_related('variants').filter(
            is_active=True
        )

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        initial_stock = serializer.validated_data.get('initial_stock') or 0

        def unit():
            created = serializer.save()
            if initial_stock:
                adjust_stock(
                    created.id, MovementType.IN, initial_stock, 'Initial stock',
                    actor=request.user
                )
                created.refresh_from_db()
            return created

        # The product row and its opening movement commit together
        try:
            product = run_in_transaction(unit)
        except StorefrontError as e:
            return error_response(e)
        logger.info(f"Created product #{product.id} {product.sku} with stock {product.stock_quantity}")

        return Response(self.get_serializer(product).data, status=status.HTTP_201_CREATED)


class ProductDetailView(generics.RetrieveUpdateDestroyAPIView):
    """
    GET: Retrieve a product
    PUT/PATCH: Update a product (stock is read-only)
    DELETE: Deactivate a product; its movement history is kept
    """
    serializer_class = ProductSerializer

    def get_queryset(self):
        return Product.objects.select_related('category').prefetch_related('variants')

    def perform_destroy(self, instance):
        instance.is_active = False
        instance.save(update_fields=['is_active', 'updated_at'])
        logger.info(f"Deactivated product #{instance.id}")


class ProductVariantListCreateView(generics.ListCreateAPIView):
    """
    GET: List variants of a product
    POST: Add a variant (starts with zero stock)
    """
    serializer_class = ProductVariantSerializer

    def get_queryset(self):
        return ProductVariant.objects.select_related('product').filter(
            product_id=self.kwargs['pk']
        )

    def perform_create(self, serializer):
        product = generics.get_object_or_404(Product, pk=self.kwargs['pk'])
        serializer.save(product=product)


class ProductSearchView(generics.ListAPIView):
    """
    GET: Search products with keyword and filters.

    Query Parameters:
        - q: Keyword to search in name, sku, description, and category name
        - category_id: Filter by category ID
        - min_price / max_price: Price range
        - in_stock: Only products with stock (true/false)
    """
    serializer_class = ProductSearchSerializer

    def get_queryset(self):
        queryset = Product.objects.select_related('category').filter(is_active=True)

        keyword = self.request.query_params.get('q', '').strip()
        if keyword:
            queryset = queryset.filter(
                Q(name__icontains=keyword) |
                Q(sku__icontains=keyword) |
                Q(description__icontains=keyword) |
                Q(category__name__icontains=keyword)
            )

        category_id = self.request.query_params.get('category_id')
        if category_id:
            queryset = queryset.filter(category_id=category_id)

        min_price = self.request.query_params.get('min_price')
        if min_price:
            try:
                queryset = queryset.filter(price__gte=float(min_price))
            except ValueError:
                pass

        max_price = self.request.query_params.get('max_price')
        if max_price:
            try:
                queryset = queryset.filter(price__lte=float(max_price))
            except ValueError:
                pass

        if self.request.query_params.get('in_stock', '').lower() == 'true':
            queryset = queryset.filter(stock_quantity__gt=0)

        return queryset.order_by('name')


class ProductAutocompleteView(APIView):
    """
    GET: Prefix-matching autocomplete on product name and SKU.

    Query Parameters:
        - q: Search query (minimum 3 characters)

    Returns top 10 matching products. Rate limited to 20 requests per minute.
    """

    @rate_limit(max_requests=20, window_seconds=60)
    def get(self, request):
        query = request.query_params.get('q', '').strip()

        if len(query) < 3:
            return Response(
                {'error': 'VALIDATION_ERROR', 'detail': 'Query must be at least 3 characters', 'data': {}},
                status=status.HTTP_400_BAD_REQUEST
            )

        products = Product.objects.filter(
            Q(name__istartswith=query) | Q(sku__istartswith=query),
            is_active=True
        ).values('id', 'name', 'sku', 'price', 'stock_quantity')[:10]

        return Response(list(products))


# =============================================================================
# Stock Views
# =============================================================================

class ProductInventoryView(generics.ListAPIView):
    """
    GET: Stock table of products.

    Query Parameters:
        - category: Category slug or name prefix
        - low_stock: Only products at or below their low stock threshold (true/false)
        - out_of_stock: Only products with no stock (true/false)
        - search: Name or SKU contains
    """
    serializer_class = ProductInventorySerializer

    def get_queryset(self):
        queryset = Product.objects.select_related('category').annotate(
            last_movement_at=Max('stock_movements__created_at'),
            total_movements=Count('stock_movements'),
        )
        params = self.request.query_params

        category = params.get('category', '').strip()
        if category:
            queryset = queryset.filter(
                Q(category__slug__istartswith=category) | Q(category__name__istartswith=category)
            )

        if params.get('low_stock', '').lower() == 'true':
            threshold = ProductSettings.load().default_stock_threshold
            queryset = queryset.filter(stock_quantity__gt=0).filter(
                Q(low_stock_threshold__isnull=True, stock_quantity__lte=threshold)
                | Q(low_stock_threshold__isnull=False, stock_quantity__lte=F('low_stock_threshold'))
            )

        if params.get('out_of_stock', '').lower() == 'true':
            queryset = queryset.filter(stock_quantity__lte=0)

        search = params.get('search', '').strip()
        if search:
            queryset = queryset.filter(Q(name__icontains=search) | Q(sku__icontains=search))

        return queryset.order_by('stock_quantity', 'name')


class StockMovementListCreateView(RateLimitMixin, generics.ListCreateAPIView):
    """
    GET: List ledger entries, newest first
    POST: Apply a stock adjustment

    Query Parameters (GET):
        - product_id, type, start_date, end_date, search
        - sort_by: created_at | quantity | product_name
        - sort_order: asc | desc

    Request Body (POST):
    {
        "product_id": 12,
        "type": "ADJUSTMENT",
        "quantity": -2,
        "reason": "damaged"
    }
    """
    serializer_class = StockMovementSerializer
    rate_limit_max_requests = 30
    rate_limit_window_seconds = 60

    def get_queryset(self):
        queryset = StockMovement.objects.select_related('product', 'created_by')
        params = self.request.query_params

        product_id = params.get('product_id')
        if product_id:
            queryset = queryset.filter(product_id=product_id)

        movement_type = params.get('type', '').upper()
        if movement_type in MovementType.values:
            queryset = queryset.filter(type=movement_type)

        start = parse_boundary(params.get('start_date', ''))
        if start:
            queryset = queryset.filter(created_at__gte=start)
        end = parse_boundary(params.get('end_date', ''), end_of_day=True)
        if end:
            queryset = queryset.filter(created_at__lte=end)

        search = params.get('search', '').strip()
        if search:
            queryset = queryset.filter(
                Q(product__name__icontains=search) | Q(reason__icontains=search)
            )

        sort_field = MOVEMENT_SORT_FIELDS.get(params.get('sort_by', ''), 'created_at')
        if params.get('sort_order', 'desc').lower() == 'asc':
            return queryset.order_by(sort_field, 'id')
        return queryset.order_by(f'-{sort_field}', '-id')

    def create(self, request, *args, **kwargs):
        """
        Returns:
            - 201: {movement, product: {id, stock_quantity}}
            - 400: Validation error (zero quantity, missing reason)
            - 404: Product or variant not found
            - 409: Insufficient stock or concurrent modification
        """
        serializer = StockAdjustmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            movement = adjust_stock(
                data['product_id'],
                data['type'],
                data['quantity'],
                data['reason'],
                variant_id=data.get('variant_id'),
                actor=request.user,
            )
        except StorefrontError as e:
            return error_response(e)
        except Exception as e:
            logger.exception(f"Unexpected error adjusting stock: {e}")
            return Response(
                {'error': 'SERVER_ERROR', 'detail': 'An unexpected error occurred', 'data': {}},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        return Response(
            {
                'movement': StockMovementSerializer(movement).data,
                'product': {
                    'id': movement.product_id,
                    'stock_quantity': movement.product.stock_quantity,
                    'in_stock': movement.product.in_stock,
                },
            },
            status=status.HTTP_201_CREATED
        )


class StockMovementDetailView(generics.RetrieveAPIView):
    """GET: Retrieve a single ledger entry. Entries are never edited."""
    serializer_class = StockMovementSerializer

    def get_queryset(self):
        return StockMovement.objects.select_related('product', 'created_by')


class InventoryStatsView(APIView):
    """
    GET: Inventory statistics.

    Query Parameters:
        - low_stock_threshold: Overrides the store default
    """

    def get(self, request):
        threshold = request.query_params.get('low_stock_threshold')
        try:
            threshold = int(threshold) if threshold not in (None, '') else None
        except ValueError:
            threshold = None
        return Response(get_inventory_stats(threshold))
