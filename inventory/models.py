"""
Inventory Models - Catalog entities and the stock movement ledger.

Models:
    - Category: Product categorization (rings, necklaces, ...)
    - Product: Items available for sale, with a running stock_quantity
    - ProductVariant: Size/metal variants carrying their own stock
    - StockMovement: Append-only ledger of every stock change

stock_quantity on Product and ProductVariant is only ever written by
inventory.services together with a StockMovement row.
"""
from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q

from .ledger import MovementType


class Category(models.Model):
    """
    Product category for organizing products.
    """
    name = models.CharField(
        max_length=100,
        unique=True,
        db_index=True,
        help_text="Unique category name"
    )
    slug = models.SlugField(max_length=120, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Category'
        verbose_name_plural = 'Categories'
        ordering = ['name']

    def __str__(self):
        return self.name


class Product(models.Model):
    """
    Product entity representing items available for sale.
    """
    name = models.CharField(
        max_length=200,
        db_index=True,
        help_text="Product name for display and search"
    )
    slug = models.SlugField(max_length=220, unique=True)
    sku = models.CharField(max_length=64, unique=True)
    description = models.TextField(blank=True, default='')
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))],
        help_text="Product price (must be positive)"
    )
    category = models.ForeignKey(
        Category,
        on_delete=models.PROTECT,
        related_name='products',
        help_text="Product category"
    )
    stock_quantity = models.IntegerField(
        default=0,
        help_text="Current stock, kept equal to the latest movement's new_stock"
    )
    in_stock = models.BooleanField(default=False, db_index=True)
    low_stock_threshold = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Overrides the store-wide low stock threshold"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether product is available for ordering"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Product'
        verbose_name_plural = 'Products'
        ordering = ['name']
        indexes = [
            models.Index(fields=['name', 'is_active'], name='inventory_p_name_4a1e2c_idx'),
            models.Index(fields=['category', 'is_active'], name='inventory_p_categor_8d0f3b_idx'),
            models.Index(fields=['stock_quantity'], name='inventory_p_stock_q_52c7a9_idx'),
        ]

    def __str__(self):
        return f"{self.name} ({self.sku})"

    def is_low_stock(self, default_threshold: int) -> bool:
        threshold = self.low_stock_threshold
        if threshold is None:
            threshold = default_threshold
        return 0 < self.stock_quantity <= threshold

    @property
    def is_out_of_stock(self) -> bool:
        return self.stock_quantity <= 0


class ProductVariant(models.Model):
    """A purchasable variant (ring size, metal) with its own stock."""
    product = models.ForeignKey(
        Product,
        on_delete=models.CASCADE,
        related_name='variants'
    )
    name = models.CharField(max_length=100)
    sku = models.CharField(max_length=64, unique=True)
    price_adjustment = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal('0.00')
    )
    stock_quantity = models.IntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Product Variant'
        verbose_name_plural = 'Product Variants'
        ordering = ['product', 'name']

    def __str__(self):
        return f"{self.product.name} / {self.name}"

    @property
    def price(self) -> Decimal:
        return self.product.price + self.price_adjustment


class StockMovement(models.Model):
    """
    Immutable record of one stock change.

    Rules:
    - NEVER update() or delete()
    - Corrections are new movements with the inverse quantity
    - quantity is the signed delta: new_stock == previous_stock + quantity
    """
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='stock_movements'
    )
    variant = models.ForeignKey(
        ProductVariant,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='stock_movements'
    )
    type = models.CharField(
        max_length=20,
        choices=MovementType.choices,
        db_index=True
    )
    quantity = models.IntegerField(help_text="Signed change: positive adds, negative removes")
    previous_stock = models.IntegerField()
    new_stock = models.IntegerField()
    reason = models.CharField(max_length=255)
    # Originating entity, e.g. ('order', '42')
    reference_type = models.CharField(max_length=50, blank=True, default='')
    reference_id = models.CharField(max_length=64, blank=True, default='')
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='stock_movements'
    )
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        verbose_name = 'Stock Movement'
        verbose_name_plural = 'Stock Movements'
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['product', 'created_at'], name='inventory_s_product_1b9e4f_idx'),
            models.Index(fields=['reference_type', 'reference_id'], name='inventory_s_referen_6c2d80_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(new_stock=F('previous_stock') + F('quantity')),
                name='stock_movement_balances',
            ),
        ]

    def __str__(self):
        sign = '+' if self.quantity > 0 else ''
        return f"{self.type} {sign}{self.quantity} {self.product_id}: {self.reason}"

    def save(self, *args, **kwargs):
        if self.pk:
            raise ValueError(
                "Stock movements are immutable. "
                "Record a new movement with the inverse quantity instead."
            )
        if self.new_stock != self.previous_stock + self.quantity:
            raise ValueError(
                f"Unbalanced movement: {self.previous_stock} + {self.quantity} "
                f"!= {self.new_stock}"
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Stock movements are immutable and cannot be deleted.")
