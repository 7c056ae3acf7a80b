"""
URL routing for inventory API endpoints.
"""
from django.urls import path
from . import views

app_name = 'inventory'

urlpatterns = [
    # Categories
    path('categories/', views.CategoryListCreateView.as_view(), name='category-list'),
    path('categories/<int:pk>/', views.CategoryDetailView.as_view(), name='category-detail'),

    # Products
    path('products/', views.ProductListCreateView.as_view(), name='product-list'),
    path('products/<int:pk>/', views.ProductDetailView.as_view(), name='product-detail'),
    path('products/<int:pk>/variants/', views.ProductVariantListCreateView.as_view(), name='product-variants'),
    path('products/search/', views.ProductSearchView.as_view(), name='product-search'),
    path('products/autocomplete/', views.ProductAutocompleteView.as_view(), name='product-autocomplete'),

    # Stock
    path('inventory/products/', views.ProductInventoryView.as_view(), name='inventory-products'),
    path('inventory/movements/', views.StockMovementListCreateView.as_view(), name='movement-list'),
    path('inventory/movements/<int:pk>/', views.StockMovementDetailView.as_view(), name='movement-detail'),
    path('inventory/stats/', views.InventoryStatsView.as_view(), name='inventory-stats'),
]
