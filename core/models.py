"""
Store-wide settings kept in the database so administrators can edit them.
"""
from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models


class ProductSettings(models.Model):
    """
    Singleton row with catalog and stock policies.

    A fresh row takes its defaults from ALLOW_NEGATIVE_STOCK and
    LOW_STOCK_THRESHOLD in Django settings.
    """
    SINGLETON_ID = 1

    allow_negative_stock = models.BooleanField(
        default=False,
        help_text="Let stock movements take a product below zero"
    )
    default_stock_threshold = models.PositiveIntegerField(
        default=10,
        validators=[MinValueValidator(0)],
        help_text="Stock level at or below which a product counts as low stock"
    )
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Product Settings'
        verbose_name_plural = 'Product Settings'

    def __str__(self):
        return 'Product settings'

    def save(self, *args, **kwargs):
        self.pk = self.SINGLETON_ID
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Product settings cannot be deleted")

    @classmethod
    def load(cls) -> 'ProductSettings':
        """Return the settings row, creating it from configured defaults."""
        obj, _ = cls.objects.get_or_create(
            pk=cls.SINGLETON_ID,
            defaults={
                'allow_negative_stock': getattr(settings, 'ALLOW_NEGATIVE_STOCK', False),
                'default_stock_threshold': getattr(settings, 'LOW_STOCK_THRESHOLD', 10),
            },
        )
        return obj
