"""
Settings API Views.

Implements:
- GET /settings/product/ - Current product settings
- PUT/PATCH /settings/product/ - Update product settings
"""
import logging

from rest_framework import generics

from .models import ProductSettings
from .serializers import ProductSettingsSerializer

logger = logging.getLogger(__name__)


class ProductSettingsView(generics.RetrieveUpdateAPIView):
    """
    GET: Retrieve store-wide product settings
    PUT/PATCH: Update them (admin only)
    """
    serializer_class = ProductSettingsSerializer

    def get_object(self):
        return ProductSettings.load()

    def perform_update(self, serializer):
        instance = serializer.save()
        logger.info(
            f"Product settings updated by {self.request.user}: "
            f"allow_negative_stock={instance.allow_negative_stock}, "
            f"default_stock_threshold={instance.default_stock_threshold}"
        )
