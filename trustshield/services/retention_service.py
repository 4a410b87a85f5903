"""
Retention purge for tracking data and risk patterns.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from trustshield.config import settings
from trustshield.services.tracking_repository import TrackingRepository
from trustshield.utils.clock import utcnow
from trustshield.utils.logging_config import metrics

logger = logging.getLogger(__name__)


def purge_expired_tracking(
    db: Session,
    tracking_retention_days: Optional[int] = None,
    pattern_retention_days: Optional[int] = None,
    now: Callable[[], datetime] = utcnow,
) -> Dict[str, int]:
    """
    Delete device, IP and location rows past the tracking retention window and
    risk patterns past the pattern retention window.
    """
    current = now()
    tracking_days = tracking_retention_days or settings.tracking_retention_days
    pattern_days = pattern_retention_days or settings.risk_pattern_retention_days

    counts = TrackingRepository(db).purge(
        tracking_cutoff=current - timedelta(days=tracking_days),
        pattern_cutoff=current - timedelta(days=pattern_days),
    )
    for kind, count in counts.items():
        metrics.increment(f"retention.purged.{kind}", count)
    logger.info(f"Retention purge removed {counts}")
    return counts
