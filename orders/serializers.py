"""
Serializers for order models.
"""
from rest_framework import serializers

from inventory.serializers import ProductMinimalSerializer
from .models import Order, OrderItem, OrderStatusHistory
from .status import OrderStatus, PaymentMethod, PaymentStatus, allowed_transitions


class OrderItemSerializer(serializers.ModelSerializer):
    """Serializer for OrderItem with product details."""
    product = ProductMinimalSerializer(read_only=True)
    variant_name = serializers.CharField(source='variant.name', read_only=True, default=None)
    subtotal = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        read_only=True
    )

    class Meta:
        model = OrderItem
        fields = ['id', 'product', 'variant', 'variant_name', 'quantity', 'unit_price', 'subtotal']


class OrderItemCreateSerializer(serializers.Serializer):
    """Serializer for order items in an order creation request."""
    product_id = serializers.IntegerField(min_value=1)
    variant_id = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    quantity = serializers.IntegerField(min_value=1)


class OrderSerializer(serializers.ModelSerializer):
    """
    Serializer for Order model with nested items.
    Uses prefetch_related for optimized queries.
    """
    items = OrderItemSerializer(many=True, read_only=True)
    item_count = serializers.SerializerMethodField()
    allowed_transitions = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'customer_name', 'customer_email',
            'status', 'payment_status', 'payment_method', 'payment_reference',
            'subtotal', 'shipping', 'tax', 'total', 'notes',
            'items', 'item_count', 'allowed_transitions',
            'created_at', 'updated_at'
        ]
        read_only_fields = fields

    def get_item_count(self, obj):
        return len(obj.items.all())

    def get_allowed_transitions(self, obj):
        return sorted(s.value for s in allowed_transitions(obj.status))


class OrderListSerializer(serializers.ModelSerializer):
    """
    Optimized serializer for listing orders.
    """
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'customer_name', 'customer_email', 'status',
            'payment_status', 'payment_method', 'total', 'item_count', 'created_at'
        ]

    def get_item_count(self, obj):
        # Use prefetched items count if available
        if hasattr(obj, '_prefetched_objects_cache') and 'items' in obj._prefetched_objects_cache:
            return len(obj.items.all())
        return obj.items.count()


class OrderCreateSerializer(serializers.Serializer):
    """
    Serializer for creating orders via POST /orders/

    Request format:
    {
        "customer_name": "Asha Rao",
        "customer_email": "asha@example.com",
        "payment_method": "cod",
        "items": [
            {"product_id": 1, "quantity": 2},
            {"product_id": 3, "variant_id": 7, "quantity": 1}
        ]
    }
    """
    customer_name = serializers.CharField(max_length=200)
    customer_email = serializers.EmailField()
    payment_method = serializers.ChoiceField(choices=PaymentMethod.choices, default=PaymentMethod.COD)
    payment_reference = serializers.CharField(max_length=100, required=False, allow_blank=True, default='')
    notes = serializers.CharField(required=False, allow_blank=True, default='')
    items = OrderItemCreateSerializer(many=True)

    def validate_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one item is required")

        keys = [(item['product_id'], item.get('variant_id')) for item in value]
        if len(keys) != len(set(keys)):
            raise serializers.ValidationError("Duplicate products in order items")

        return value


class OrderUpdateSerializer(serializers.Serializer):
    """
    Body of PUT/PATCH /orders/{id}/

    {
        "status": "SHIPPED",
        "payment_status": "PAID",
        "force": false,
        "note": "Dispatched via courier"
    }

    Only known values are checked here; reachability from the current
    status is decided by orders.services.update_order.
    """
    status = serializers.ChoiceField(choices=OrderStatus.choices, required=False)
    payment_status = serializers.ChoiceField(choices=PaymentStatus.choices, required=False)
    force = serializers.BooleanField(required=False, default=False)
    note = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')

    def validate(self, attrs):
        if 'status' not in attrs and 'payment_status' not in attrs:
            raise serializers.ValidationError("Provide status and/or payment_status")
        return attrs


class OrderStatusHistorySerializer(serializers.ModelSerializer):
    actor = serializers.StringRelatedField(read_only=True)

    class Meta:
        model = OrderStatusHistory
        fields = [
            'id', 'from_status', 'to_status', 'from_payment_status',
            'to_payment_status', 'forced', 'actor', 'note', 'created_at'
        ]
        read_only_fields = fields
