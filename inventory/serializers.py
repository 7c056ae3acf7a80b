"""
Serializers for inventory models.
Provides data validation and JSON conversion for API endpoints.
"""
from django.utils.text import slugify
from rest_framework import serializers

from .ledger import ADJUSTABLE_TYPES, MovementType
from .models import Category, Product, ProductVariant, StockMovement


class CategorySerializer(serializers.ModelSerializer):
    """Serializer for Category model."""
    product_count = serializers.SerializerMethodField()
    slug = serializers.SlugField(required=False)

    class Meta:
        model = Category
        fields = ['id', 'name', 'slug', 'product_count', 'created_at', 'updated_at']
        read_only_fields = ['id', 'created_at', 'updated_at']

    def get_product_count(self, obj):
        return obj.products.count()

    def validate(self, attrs):
        if not attrs.get('slug') and attrs.get('name'):
            attrs['slug'] = slugify(attrs['name'])
        return attrs


class CategoryMinimalSerializer(serializers.ModelSerializer):
    """Minimal serializer for nested category representation."""
    class Meta:
        model = Category
        fields = ['id', 'name', 'slug']


class ProductVariantSerializer(serializers.ModelSerializer):
    price = serializers.DecimalField(max_digits=10, decimal_places=2, read_only=True)

    class Meta:
        model = ProductVariant
        fields = [
            'id', 'product', 'name', 'sku', 'price_adjustment', 'price',
            'stock_quantity', 'is_active', 'created_at', 'updated_at'
        ]
        # Stock only changes through stock movements
        read_only_fields = ['id', 'product', 'stock_quantity', 'created_at', 'updated_at']


class ProductSerializer(serializers.ModelSerializer):
    """
    Serializer for Product model with nested category.

    stock_quantity is read-only; opening stock is given as initial_stock on
    create and recorded by the view as an IN movement.
    """
    category = CategoryMinimalSerializer(read_only=True)
    category_id = serializers.PrimaryKeyRelatedField(
        queryset=Category.objects.all(),
        source='category',
        write_only=True
    )
    slug = serializers.SlugField(required=False)
    variants = ProductVariantSerializer(many=True, read_only=True)
    initial_stock = serializers.IntegerField(min_value=0, required=False, write_only=True)

    class Meta:
        model = Product
        fields = [
            'id', 'name', 'slug', 'sku', 'description', 'price',
            'category', 'category_id', 'stock_quantity', 'in_stock',
            'low_stock_threshold', 'is_active', 'variants', 'initial_stock',
            'created_at', 'updated_at'
        ]
        read_only_fields = ['id', 'stock_quantity', 'in_stock', 'created_at', 'updated_at']

    def validate(self, attrs):
        if not attrs.get('slug') and attrs.get('name') and self.instance is None:
            attrs['slug'] = slugify(f"{attrs['name']}-{attrs.get('sku', '')}")
        return attrs

    def create(self, validated_data):
        validated_data.pop('initial_stock', None)
        return super().create(validated_data)

    def update(self, instance, validated_data):
        validated_data.pop('initial_stock', None)
        return super().update(instance, validated_data)


class ProductMinimalSerializer(serializers.ModelSerializer):
    """Minimal serializer for autocomplete and nested representations."""
    class Meta:
        model = Product
        fields = ['id', 'name', 'sku', 'price']


class ProductSearchSerializer(serializers.ModelSerializer):
    """Serializer for product search results with category info."""
    category = CategoryMinimalSerializer(read_only=True)

    class Meta:
        model = Product
        fields = ['id', 'name', 'sku', 'description', 'price', 'category', 'stock_quantity', 'is_active']


class ProductInventorySerializer(serializers.ModelSerializer):
    """
    Stock view of a product for the inventory table.
    Expects last_movement_at / total_movements annotations from the view.
    """
    category_name = serializers.CharField(source='category.name', read_only=True)
    last_movement_at = serializers.DateTimeField(read_only=True)
    total_movements = serializers.IntegerField(read_only=True)

    class Meta:
        model = Product
        fields = [
            'id', 'name', 'slug', 'sku', 'category_name', 'price',
            'stock_quantity', 'in_stock', 'low_stock_threshold',
            'last_movement_at', 'total_movements'
        ]


class StockMovementSerializer(serializers.ModelSerializer):
    """Read representation of a ledger entry."""
    product = ProductMinimalSerializer(read_only=True)
    created_by = serializers.StringRelatedField(read_only=True)

    class Meta:
        model = StockMovement
        fields = [
            'id', 'product', 'variant', 'type', 'quantity',
            'previous_stock', 'new_stock', 'reason',
            'reference_type', 'reference_id', 'created_by', 'created_at'
        ]
        read_only_fields = fields


class StockAdjustmentSerializer(serializers.Serializer):
    """
    Request body for POST /inventory/movements/

    {
        "product_id": 12,
        "variant_id": null,
        "type": "OUT",
        "quantity": 2,
        "reason": "Damaged clasp"
    }

    Business rules (non-zero quantity, reason, stock floor) are enforced by
    inventory.services so the API and internal callers share them.
    """
    product_id = serializers.IntegerField(min_value=1)
    variant_id = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    type = serializers.ChoiceField(
        choices=[(t.value, t.label) for t in MovementType if t in ADJUSTABLE_TYPES],
        default=MovementType.ADJUSTMENT.value
    )
    quantity = serializers.IntegerField()
    reason = serializers.CharField(allow_blank=True, max_length=255, trim_whitespace=True)
