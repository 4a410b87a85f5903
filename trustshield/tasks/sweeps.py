"""
Periodic sweeps.

- reveal_expired: publish concealed reviews whose deadline passed
- retention_purge: drop old tracking rows and risk patterns
- reputation_batch: recompute reputation in cursor-resumable batches

Every sweep is idempotent, so coalesced or skipped runs lose nothing.
"""

import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from trustshield.config import settings
from trustshield.database import SessionLocal
from trustshield.exceptions import StorageError
from trustshield.services.blind_review_service import BlindReviewCoordinator
from trustshield.services.profile_service import DatabaseProfileAccessor
from trustshield.services.reputation_service import ReputationService
from trustshield.services.retention_service import purge_expired_tracking
from trustshield.utils.logging_config import metrics

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def run_reveal_sweep(
    session_factory: SessionFactory = SessionLocal,
    master_key: Optional[bytes] = None,
    notifier=None,
) -> int:
    db = session_factory()
    try:
        reputation = ReputationService(db, DatabaseProfileAccessor(db))
        coordinator = BlindReviewCoordinator(
            db, master_key=master_key, notifier=notifier, on_reveal=reputation.recompute_for_reviews
        )
        revealed = coordinator.reveal_expired()
        metrics.gauge("sweeps.reveal.last_revealed", revealed)
        return revealed
    finally:
        db.close()


def run_retention_purge(session_factory: SessionFactory = SessionLocal) -> dict:
    db = session_factory()
    try:
        return purge_expired_tracking(db)
    finally:
        db.close()


class ReputationBatchRunner:
    """Recomputes one batch per call and remembers where it stopped."""

    def __init__(self, session_factory: SessionFactory = SessionLocal, batch_size: Optional[int] = None):
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.reputation_batch_size
        self.cursor: Optional[str] = None

    def __call__(self) -> int:
        db = self.session_factory()
        try:
            service = ReputationService(db, DatabaseProfileAccessor(db))
            processed, self.cursor = service.recompute_batch(self.cursor, self.batch_size)
            return processed
        finally:
            db.close()


class SweepScheduler:
    """
    Runs the sweeps on a background thread.

    Usage:
        sweeps = SweepScheduler()
        sweeps.start()
        ...
        sweeps.shutdown()
    """

    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        interval_hours: Optional[int] = None,
        master_key: Optional[bytes] = None,
        notifier=None,
    ):
        self.session_factory = session_factory
        self.interval_hours = interval_hours or settings.sweep_interval_hours
        self.master_key = master_key
        self.notifier = notifier
        self.reputation_batch = ReputationBatchRunner(session_factory)
        self.scheduler = BackgroundScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 3600},
            timezone="UTC",
        )

    def _guarded(self, name: str, job: Callable[[], object]):
        def run():
            try:
                result = job()
            except StorageError as e:
                metrics.increment(f"sweeps.{name}.failed")
                logger.error(f"Sweep {name} failed, will retry next interval: {e}")
                return None
            metrics.increment(f"sweeps.{name}.runs")
            logger.info(f"Sweep {name} finished: {result}")
            return result

        return run

    def setup_jobs(self):
        self.scheduler.add_job(
            self._guarded(
                "reveal_expired",
                lambda: run_reveal_sweep(self.session_factory, self.master_key, self.notifier),
            ),
            trigger=IntervalTrigger(hours=self.interval_hours),
            id="reveal_expired",
            name="Reveal expired blind reviews",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._guarded("retention_purge", lambda: run_retention_purge(self.session_factory)),
            trigger=IntervalTrigger(hours=self.interval_hours),
            id="retention_purge",
            name="Purge expired tracking data",
            replace_existing=True,
        )
        # Frequent small batches; the cursor wraps to the start after the last user
        self.scheduler.add_job(
            self._guarded("reputation_batch", self.reputation_batch),
            trigger=IntervalTrigger(minutes=30),
            id="reputation_batch",
            name="Recompute reputation batch",
            replace_existing=True,
        )

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"Sweep scheduler started (interval {self.interval_hours}h)")

    def shutdown(self, wait: bool = False):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Sweep scheduler stopped")
