"""
Django Admin configuration for inventory models.

Stock quantities are read-only here; they change only through stock movements.
"""
from django.contrib import admin
from .models import Category, Product, ProductVariant, StockMovement


@admin.register(Category)
class CategoryAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'slug', 'product_count', 'created_at']
    search_fields = ['name']
    prepopulated_fields = {'slug': ('name',)}
    ordering = ['name']

    def product_count(self, obj):
        return obj.products.count()
    product_count.short_description = 'Products'


class ProductVariantInline(admin.TabularInline):
    model = ProductVariant
    extra = 0
    readonly_fields = ['stock_quantity']


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'sku', 'price', 'category', 'stock_quantity', 'in_stock', 'is_active']
    list_filter = ['category', 'in_stock', 'is_active']
    search_fields = ['name', 'sku', 'description']
    ordering = ['name']
    raw_id_fields = ['category']
    readonly_fields = ['stock_quantity', 'in_stock', 'created_at', 'updated_at']
    inlines = [ProductVariantInline]


@admin.register(StockMovement)
class StockMovementAdmin(admin.ModelAdmin):
    list_display = ['id', 'product', 'variant', 'type', 'quantity', 'previous_stock', 'new_stock', 'reason', 'created_by', 'created_at']
    list_filter = ['type', 'created_at']
    search_fields = ['product__name', 'product__sku', 'reason', 'reference_id']
    ordering = ['-created_at']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
