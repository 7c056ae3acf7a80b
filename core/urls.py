"""
URL routing for store settings endpoints.
"""
from django.urls import path
from . import views

app_name = 'core'

urlpatterns = [
    path('settings/product/', views.ProductSettingsView.as_view(), name='product-settings'),
]
