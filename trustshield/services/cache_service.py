"""
Caching for risk reports.

Caches are passed in explicitly; tests use NullCache so every call recomputes.
"""

import logging
import threading
from typing import Dict, Optional
from datetime import datetime, timedelta

from trustshield.config import settings
from trustshield.schemas.domain import RiskAnalysisReport
from trustshield.utils.clock import utcnow

logger = logging.getLogger(__name__)


class ReportCache:
    """
    In-memory TTL cache for risk reports, keyed by the ordered user pair and
    transaction.
    """

    def __init__(self, max_size: Optional[int] = None, ttl_seconds: Optional[int] = None):
        self._cache: Dict[str, RiskAnalysisReport] = {}
        self._timestamps: Dict[str, datetime] = {}
        self._max_size = max_size or settings.cache_capacity
        self._ttl = timedelta(seconds=ttl_seconds or settings.cache_ttl)
        self._lock = threading.Lock()

    @staticmethod
    def make_key(transaction_id: str, user_a: str, user_b: str) -> str:
        first, second = sorted((user_a, user_b))
        return f"{transaction_id}:{first}:{second}"

    def _evict_expired(self):
        now = utcnow()
        expired = [k for k, ts in self._timestamps.items() if now - ts > self._ttl]
        for k in expired:
            self._cache.pop(k, None)
            self._timestamps.pop(k, None)

    def _evict_oldest(self):
        if len(self._cache) >= self._max_size:
            oldest_key = min(self._timestamps, key=self._timestamps.get)
            self._cache.pop(oldest_key, None)
            self._timestamps.pop(oldest_key, None)

    def get(self, key: str) -> Optional[RiskAnalysisReport]:
        with self._lock:
            self._evict_expired()
            report = self._cache.get(key)
        if report is not None:
            logger.debug(f"Cache hit for {key}")
        return report

    def set(self, key: str, report: RiskAnalysisReport):
        with self._lock:
            self._evict_expired()
            self._evict_oldest()
            self._cache[key] = report
            self._timestamps[key] = utcnow()

    def invalidate_user(self, user_id: str) -> int:
        """Drop every cached report involving a user. Returns how many were dropped."""
        with self._lock:
            keys = [k for k in self._cache if user_id in k.split(":")[1:]]
            for k in keys:
                self._cache.pop(k, None)
                self._timestamps.pop(k, None)
        return len(keys)

    def clear(self):
        with self._lock:
            self._cache.clear()
            self._timestamps.clear()
        logger.info("Report cache cleared")

    @property
    def size(self) -> int:
        return len(self._cache)


class NullCache:
    """Cache that never stores anything."""

    @staticmethod
    def make_key(transaction_id: str, user_a: str, user_b: str) -> str:
        return ReportCache.make_key(transaction_id, user_a, user_b)

    def get(self, key: str) -> Optional[RiskAnalysisReport]:
        return None

    def set(self, key: str, report: RiskAnalysisReport):
        pass

    def invalidate_user(self, user_id: str) -> int:
        return 0

    def clear(self):
        pass

    @property
    def size(self) -> int:
        return 0
