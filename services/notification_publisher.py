"""
Notification Publisher
Real-time notices go out through ``publish(channel, event, payload)``. The
transport itself (sockets, push) lives outside this service; delivery code only
sees the port and the fire-and-forget dispatcher below. Dispatch failures are
logged and never reach the caller.
"""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

from config import Config

logger = logging.getLogger(__name__)


def order_channel(order_id: str) -> str:
    return f"order:{order_id}"


def delivery_channel(order_id: str) -> str:
    return f"delivery:{order_id}"


def seller_channel(seller_id: str) -> str:
    return f"seller:{seller_id}"


def customer_channel(customer_id: str) -> str:
    return f"customer:{customer_id}"


class NotificationPublisher(ABC):
    """Port for the real-time notification transport"""

    @abstractmethod
    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        """Publish ``event`` with ``payload`` to ``channel``"""


class LoggingPublisher(NotificationPublisher):
    """Default publisher when no transport is wired in"""

    def publish(self, channel, event, payload):
        logger.info(f"📣 NOTIFY: channel={channel} event={event} keys={sorted(payload)}")


class InMemoryPublisher(NotificationPublisher):
    """Records published events; used in development and tests"""

    def __init__(self):
        self.published: List[Tuple[str, str, Dict[str, Any]]] = []
        self.should_fail = False
        self._lock = threading.Lock()

    def publish(self, channel, event, payload):
        if self.should_fail:
            raise ConnectionError(f"Transport unavailable for {channel}")
        with self._lock:
            self.published.append((channel, event, payload))

    def events(self, channel: Optional[str] = None) -> List[str]:
        return [event for ch, event, _ in self.published if channel is None or ch == channel]


class NotificationDispatcher:
    """Fire-and-forget dispatch on a worker pool"""

    def __init__(
        self,
        publisher: Optional[NotificationPublisher] = None,
        max_workers: Optional[int] = None,
        synchronous: bool = False,
    ):
        self.publisher = publisher or LoggingPublisher()
        self.synchronous = synchronous
        self._executor = None if synchronous else ThreadPoolExecutor(
            max_workers=max_workers or Config.NOTIFICATION_WORKERS,
            thread_name_prefix="notify",
        )

    def dispatch(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        if self._executor is None:
            self._safe_publish(channel, event, payload)
            return
        try:
            self._executor.submit(self._safe_publish, channel, event, payload)
        except RuntimeError as e:
            # Executor already shut down
            logger.warning(f"⚠️ NOTIFY_DROPPED: {event} to {channel}: {e}")

    def _safe_publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        try:
            self.publisher.publish(channel, event, payload)
        except Exception as e:
            logger.warning(f"⚠️ NOTIFY_FAILED: {event} to {channel}: {e}")

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
