"""
Fire-and-forget notifications.

Delivery failures are logged and never reach the caller.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple

from trustshield.utils.logging_config import metrics

logger = logging.getLogger(__name__)

Sender = Callable[[str, str, Dict[str, Any]], None]


def _log_sender(user_id: str, event: str, payload: Dict[str, Any]):
    logger.info(f"Notification {event} for {user_id}: {payload}")


class NotificationDispatcher:
    """
    Runs a sender callable on a small thread pool.

    Usage:
        dispatcher = NotificationDispatcher(sender=push_client.send)
        dispatcher.notify(user_id, "review_revealed", {"transaction_id": tx_id})
    """

    def __init__(self, sender: Optional[Sender] = None, max_workers: int = 2):
        self.sender = sender or _log_sender
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def _deliver(self, user_id: str, event: str, payload: Dict[str, Any]):
        try:
            self.sender(user_id, event, payload)
            metrics.increment(f"notifications.{event}.sent")
        except Exception as e:
            metrics.increment(f"notifications.{event}.failed")
            logger.warning(f"Notification {event} to {user_id} failed: {e}")

    def notify(self, user_id: str, event: str, payload: Optional[Dict[str, Any]] = None):
        self._executor.submit(self._deliver, user_id, event, payload or {})

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)


class RecordingDispatcher:
    """Synchronous dispatcher that keeps what it was asked to send."""

    def __init__(self):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    def notify(self, user_id: str, event: str, payload: Optional[Dict[str, Any]] = None):
        self.sent.append((user_id, event, payload or {}))

    def shutdown(self, wait: bool = True):
        pass
