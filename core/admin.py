"""
Django Admin configuration for store settings.
"""
from django.contrib import admin
from .models import ProductSettings


@admin.register(ProductSettings)
class ProductSettingsAdmin(admin.ModelAdmin):
    list_display = ['id', 'allow_negative_stock', 'default_stock_threshold', 'updated_at']
    readonly_fields = ['updated_at']

    def has_add_permission(self, request):
        return not ProductSettings.objects.exists()

    def has_delete_permission(self, request, obj=None):
        return False
