"""
Order Models - Orders, their items and the status audit trail.

Order.status is changed only through orders.services.update_order, which
checks it against orders.status.ORDER_STATUS_FLOW. Orders are never deleted.
"""
from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models

from inventory.models import Product, ProductVariant
from .status import TERMINAL_STATUSES, OrderStatus, PaymentMethod, PaymentStatus


class Order(models.Model):
    """
    Customer purchase with a lifecycle status and an independent payment status.
    """
    customer_name = models.CharField(max_length=200)
    customer_email = models.EmailField(db_index=True)
    status = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
        default=OrderStatus.PENDING,
        db_index=True,
        help_text="Current order status"
    )
    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True
    )
    payment_method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        default=PaymentMethod.COD
    )
    payment_reference = models.CharField(max_length=100, blank=True, default='')
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    shipping = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    tax = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    notes = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Order'
        verbose_name_plural = 'Orders'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'created_at'], name='orders_orde_status_3f1a7e_idx'),
            models.Index(fields=['payment_status', 'created_at'], name='orders_orde_payment_9b24c1_idx'),
        ]
        permissions = [
            ('force_order_status', 'Can override the order status flow'),
        ]

    def __str__(self):
        return f"Order #{self.id} - {self.customer_name} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def item_count(self) -> int:
        return self.items.count()


class OrderItem(models.Model):
    """
    A product line in an order.

    Stores the unit price at time of order to preserve historical pricing.
    """
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='items'
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='order_items'
    )
    variant = models.ForeignKey(
        ProductVariant,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='order_items'
    )
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    unit_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Price per unit at time of order"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Order Item'
        verbose_name_plural = 'Order Items'
        ordering = ['id']

    def __str__(self):
        return f"{self.quantity}x {self.product.name} @ {self.unit_price}"

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.unit_price


class OrderStatusHistory(models.Model):
    """
    Append-only audit entry for one accepted order update.

    forced marks administrator overrides outside the status flow.
    """
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='status_history'
    )
    from_status = models.CharField(max_length=20, choices=OrderStatus.choices)
    to_status = models.CharField(max_length=20, choices=OrderStatus.choices)
    from_payment_status = models.CharField(max_length=20, choices=PaymentStatus.choices)
    to_payment_status = models.CharField(max_length=20, choices=PaymentStatus.choices)
    forced = models.BooleanField(default=False)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='order_status_changes'
    )
    note = models.CharField(max_length=255, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        verbose_name = 'Order Status Change'
        verbose_name_plural = 'Order Status History'
        ordering = ['created_at', 'id']

    def __str__(self):
        flag = ' (override)' if self.forced else ''
        return f"Order #{self.order_id}: {self.from_status} -> {self.to_status}{flag}"

    def save(self, *args, **kwargs):
        if self.pk:
            raise ValueError("Order status history is append-only.")
        super().save(*args, **kwargs)
