"""
Security dependencies for the API: API token and per-client rate limiting.
"""

import threading
import time
import logging
from collections import defaultdict, deque
from typing import Optional

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from trustshield.config import settings

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name=settings.api_token_header, auto_error=False)


async def verify_api_token(
    request: Request,
    api_key: Optional[str] = Security(api_key_header),
):
    """
    Verify the API token header.

    Without a configured token (development) every request passes.
    """
    if not settings.api_token:
        if settings.is_production:
            logger.warning("API token not configured in production mode!")
        return None

    client = request.client.host if request.client else "unknown"
    if not api_key:
        logger.warning(f"Missing API key from {client}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing API key. Provide {settings.api_token_header} header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if api_key != settings.api_token:
        logger.warning(f"Invalid API key attempt from {client}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return api_key


class RateLimiter:
    """
    Sliding-window request counter per key.
    Process-local; put a shared store behind it when running several workers.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._hits: dict[str, deque] = defaultdict(deque)
        self._lock = threading.Lock()

    def _expire(self, hits: deque, window: int, now: float):
        while hits and now - hits[0] >= window:
            hits.popleft()

    def is_allowed(self, key: str, limit: int, window: int) -> tuple[bool, int]:
        """
        Record a hit for ``key`` if it is under ``limit`` within ``window`` seconds.

        Returns:
            (allowed, remaining)
        """
        now = self._clock()
        with self._lock:
            hits = self._hits[key]
            self._expire(hits, window, now)
            if len(hits) >= limit:
                return False, 0
            hits.append(now)
            return True, limit - len(hits)

    def get_retry_after(self, key: str, window: int) -> int:
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return 0
            return max(0, int(window - (self._clock() - hits[0])))

    def reset(self):
        with self._lock:
            self._hits.clear()


rate_limiter = RateLimiter()


async def check_rate_limit(request: Request):
    """Per-client-IP rate limit. Disabled when rate_limit_requests is 0."""
    if not settings.rate_limit_requests:
        return

    client_ip = request.client.host if request.client else "unknown"
    allowed, remaining = rate_limiter.is_allowed(
        key=client_ip,
        limit=settings.rate_limit_requests,
        window=settings.rate_limit_window,
    )

    request.state.rate_limit_remaining = remaining
    request.state.rate_limit_limit = settings.rate_limit_requests

    if not allowed:
        retry_after = rate_limiter.get_retry_after(client_ip, settings.rate_limit_window)
        logger.warning(f"Rate limit exceeded for {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(settings.rate_limit_requests),
                "X-RateLimit-Remaining": "0",
            },
        )
