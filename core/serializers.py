from rest_framework import serializers

from .models import ProductSettings


class ProductSettingsSerializer(serializers.ModelSerializer):
    class Meta:
        model = ProductSettings
        fields = ['allow_negative_stock', 'default_stock_threshold', 'updated_at']
        read_only_fields = ['updated_at']
