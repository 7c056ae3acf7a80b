"""
Redis-based rate limiting for back-office endpoints.

Fixed-window counter per (endpoint, caller). Callers are identified by user
id when authenticated, client IP otherwise. Requests pass through when
Redis is unreachable or RATE_LIMIT_ENABLED is off.
"""
import logging
from functools import wraps
from typing import Optional, Tuple

import redis
from django.conf import settings
from django.http import JsonResponse
from rest_framework import status
from rest_framework.response import Response

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
_redis_checked = False


def get_redis_client() -> Optional[redis.Redis]:
    """Connect on first use; remember a failed connection for the process."""
    global _redis_client, _redis_checked
    if _redis_checked:
        return _redis_client
    _redis_checked = True
    try:
        client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2
        )
        client.ping()
        _redis_client = client
    except (redis.ConnectionError, redis.TimeoutError) as e:
        logger.warning(f"Redis connection failed: {e}. Rate limiting will be disabled.")
        _redis_client = None
    return _redis_client


def get_client_ip(request):
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', 'unknown')


def get_caller_id(request) -> str:
    user = getattr(request, 'user', None)
    if user is not None and user.is_authenticated:
        return f"user:{user.pk}"
    return f"ip:{get_client_ip(request)}"


def _limits_active() -> bool:
    return getattr(settings, 'RATE_LIMIT_ENABLED', True)


def _hit(scope: str, request, window_seconds: int) -> Tuple[int, int]:
    """Count one request; returns (count in window, seconds until reset)."""
    client = get_redis_client()
    key = f"rate_limit:{scope}:{get_caller_id(request)}"
    pipe = client.pipeline()
    pipe.incr(key)
    pipe.ttl(key)
    count, ttl = pipe.execute()
    if count == 1 or ttl < 0:
        client.expire(key, window_seconds)
        ttl = window_seconds
    return count, ttl


def _limited_payload(max_requests: int, window_seconds: int, ttl: int):
    body = {
        'error': 'RATE_LIMITED',
        'detail': f'Maximum {max_requests} requests per {window_seconds} seconds allowed.',
        'data': {'retry_after': ttl},
    }
    headers = {
        'X-RateLimit-Limit': str(max_requests),
        'X-RateLimit-Remaining': '0',
        'X-RateLimit-Reset': str(ttl),
        'Retry-After': str(ttl),
    }
    return body, headers


def _annotate(response, max_requests: int, count: int, ttl: int):
    response['X-RateLimit-Limit'] = str(max_requests)
    response['X-RateLimit-Remaining'] = str(max(0, max_requests - count))
    response['X-RateLimit-Reset'] = str(ttl)
    return response


def rate_limit(max_requests: int = 20, window_seconds: int = 60):
    """
    Rate limiting decorator for DRF view methods.

    Usage:
        @rate_limit(20, 60)  # 20 requests per minute
        def get(self, request):
            ...
    """
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(self, request, *args, **kwargs):
            if not _limits_active() or get_redis_client() is None:
                return view_func(self, request, *args, **kwargs)

            scope = f"{self.__class__.__name__}.{view_func.__name__}"
            try:
                count, ttl = _hit(scope, request, window_seconds)
            except redis.RedisError as e:
                logger.error(f"Redis error in rate limiting: {e}")
                return view_func(self, request, *args, **kwargs)

            if count > max_requests:
                logger.warning(f"Rate limit exceeded on {scope} by {get_caller_id(request)}")
                body, headers = _limited_payload(max_requests, window_seconds, ttl)
                return Response(body, status=status.HTTP_429_TOO_MANY_REQUESTS, headers=headers)

            response = view_func(self, request, *args, **kwargs)
            return _annotate(response, max_requests, count, ttl)

        return wrapper
    return decorator


class RateLimitMixin:
    """
    Rate limit unsafe methods of a class-based view.

    Usage:
        class StockMovementListCreateView(RateLimitMixin, generics.ListCreateAPIView):
            rate_limit_max_requests = 30
            rate_limit_window_seconds = 60
    """
    rate_limit_max_requests = 30
    rate_limit_window_seconds = 60
    rate_limit_methods = ('POST', 'PUT', 'PATCH', 'DELETE')

    def dispatch(self, request, *args, **kwargs):
        if (
            request.method not in self.rate_limit_methods
            or not _limits_active()
            or get_redis_client() is None
        ):
            return super().dispatch(request, *args, **kwargs)

        scope = self.__class__.__name__
        try:
            count, ttl = _hit(scope, request, self.rate_limit_window_seconds)
        except redis.RedisError as e:
            logger.error(f"Redis error in rate limiting: {e}")
            return super().dispatch(request, *args, **kwargs)

        if count > self.rate_limit_max_requests:
            logger.warning(f"Rate limit exceeded on {scope} by {get_caller_id(request)}")
            body, headers = _limited_payload(
                self.rate_limit_max_requests, self.rate_limit_window_seconds, ttl
            )
            # Runs before DRF content negotiation, so no DRF Response here
            response = JsonResponse(body, status=status.HTTP_429_TOO_MANY_REQUESTS)
            for name, value in headers.items():
                response[name] = value
            return response

        response = super().dispatch(request, *args, **kwargs)
        return _annotate(response, self.rate_limit_max_requests, count, ttl)
