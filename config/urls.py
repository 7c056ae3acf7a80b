"""
Root URLconf of the storefront back-office.

All API routes live under /api/; /health/ reports database and Redis reachability.
"""
from django.contrib import admin
from django.db import DatabaseError, connection
from django.http import JsonResponse
from django.urls import include, path

from core.rate_limiting import get_redis_client


def health_check(request):
    """Liveness probe; Redis only backs rate limiting, so it never fails the check."""
    try:
        connection.ensure_connection()
        database = 'ok'
    except DatabaseError:
        database = 'unavailable'

    healthy = database == 'ok'
    return JsonResponse(
        {
            'status': 'healthy' if healthy else 'degraded',
            'service': 'storefront-backoffice',
            'database': database,
            'redis': 'ok' if get_redis_client() is not None else 'unavailable',
        },
        status=200 if healthy else 503
    )


urlpatterns = [
    path('admin/', admin.site.urls),
    path('health/', health_check, name='health-check'),
    path('api/', include('core.urls')),
    path('api/', include('inventory.urls')),
    path('api/', include('orders.urls')),
]
