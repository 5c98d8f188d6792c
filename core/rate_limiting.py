"""
Redis-based rate limiting for API endpoints.
Fixed window counter per client: INCR a key, set its TTL on the first hit.
"""
import logging
import time
from functools import wraps

import redis
from django.conf import settings
from rest_framework import status
from rest_framework.response import Response

logger = logging.getLogger(__name__)

REDIS_RETRY_SECONDS = 30

_redis_client = None
_redis_retry_at = 0.0


def get_redis_client():
    """
    Connect on first use; None when Redis is unreachable. After a failed
    attempt the connection is retried once REDIS_RETRY_SECONDS have passed.
    """
    global _redis_client, _redis_retry_at
    if _redis_client is not None:
        return _redis_client

    now = time.monotonic()
    if now < _redis_retry_at:
        return None

    try:
        client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2
        )
        client.ping()
        _redis_client = client
    except (redis.ConnectionError, redis.TimeoutError) as e:
        logger.warning(
            f"Redis connection failed: {e}. Rate limiting disabled for {REDIS_RETRY_SECONDS}s."
        )
        _redis_retry_at = now + REDIS_RETRY_SECONDS
    return _redis_client


def get_client_ip(request):
    """Extract client IP address from request."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', 'unknown')


def get_client_key(request):
    """Authenticated callers are limited per account, anonymous ones per IP."""
    user = getattr(request, 'user', None)
    if user is not None and user.is_authenticated:
        return f"user:{user.pk}"
    return f"ip:{get_client_ip(request)}"


def _limit_exceeded_response(max_requests, window_seconds, ttl):
    return Response(
        {
            'error': 'Rate limit exceeded',
            'detail': f'Maximum {max_requests} requests per {window_seconds} seconds allowed.',
            'retry_after': ttl
        },
        status=status.HTTP_429_TOO_MANY_REQUESTS,
        headers={
            'X-RateLimit-Limit': str(max_requests),
            'X-RateLimit-Remaining': '0',
            'X-RateLimit-Reset': str(ttl),
            'Retry-After': str(ttl)
        }
    )


def _hit(key, window_seconds):
    client = get_redis_client()
    current_count = client.incr(key)
    if current_count == 1:
        client.expire(key, window_seconds)
    return current_count, client.ttl(key)


def _enabled():
    return getattr(settings, 'RATE_LIMIT_ENABLED', True) and get_redis_client() is not None


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
            if not _enabled():
                return view_func(self, request, *args, **kwargs)

            key = f"rate_limit:{view_func.__qualname__}:{get_client_key(request)}"
            try:
                current_count, ttl = _hit(key, window_seconds)
            except redis.RedisError as e:
                # Fail open
                logger.error(f"Redis error in rate limiting: {e}")
                return view_func(self, request, *args, **kwargs)

            if current_count > max_requests:
                return _limit_exceeded_response(max_requests, window_seconds, ttl)

            response = view_func(self, request, *args, **kwargs)
            response['X-RateLimit-Limit'] = str(max_requests)
            response['X-RateLimit-Remaining'] = str(max(0, max_requests - current_count))
            response['X-RateLimit-Reset'] = str(ttl)
            return response

        return wrapper
    return decorator


class RateLimitExceeded(Exception):
    def __init__(self, ttl):
        self.ttl = ttl
        super().__init__(f"Rate limit exceeded, retry in {ttl}s")


class RateLimitMixin:
    """
    Mixin for class-based views. Counts every request to the view class.

    Usage:
        class MyView(RateLimitMixin, APIView):
            rate_limit_max_requests = 20
            rate_limit_window_seconds = 60
    """
    rate_limit_max_requests = 20
    rate_limit_window_seconds = 60

    def initial(self, request, *args, **kwargs):
        # Runs after DRF authentication so the key can use request.user
        super().initial(request, *args, **kwargs)
        self._rate_limit_state = None
        if not _enabled():
            return

        key = f"rate_limit:{self.__class__.__name__}:{get_client_key(request)}"
        try:
            self._rate_limit_state = _hit(key, self.rate_limit_window_seconds)
        except redis.RedisError as e:
            logger.error(f"Redis error in rate limiting: {e}")
            return

        current_count, ttl = self._rate_limit_state
        if current_count > self.rate_limit_max_requests:
            raise RateLimitExceeded(ttl)

    def handle_exception(self, exc):
        if isinstance(exc, RateLimitExceeded):
            return _limit_exceeded_response(
                self.rate_limit_max_requests, self.rate_limit_window_seconds, exc.ttl
            )
        return super().handle_exception(exc)

    def finalize_response(self, request, response, *args, **kwargs):
        response = super().finalize_response(request, response, *args, **kwargs)
        state = getattr(self, '_rate_limit_state', None)
        if state and response.status_code != status.HTTP_429_TOO_MANY_REQUESTS:
            current_count, ttl = state
            response['X-RateLimit-Limit'] = str(self.rate_limit_max_requests)
            response['X-RateLimit-Remaining'] = str(max(0, self.rate_limit_max_requests - current_count))
            response['X-RateLimit-Reset'] = str(ttl)
        return response
