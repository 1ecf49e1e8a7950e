"""
Best-effort notification side channel.

Deliveries run on a small worker pool and are never awaited by the ledger
operation that triggered them. Failures and timeouts are logged here and go
no further.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

import httpx

from .logging_config import get_logger

logger = get_logger("notifications")

DEFAULT_MAX_PENDING = 1000


class EventKind(str, Enum):
    EARNING_ADDED = "earningAdded"
    BONUS_ADDED = "bonusAdded"
    WITHDRAWAL_REQUESTED = "withdrawalRequested"
    WITHDRAWAL_STATUS_UPDATE = "withdrawalStatusUpdate"


class Notifier(Protocol):
    """
    Delivery collaborator.

    Implementations must bound their own I/O with a timeout. A call that
    never returns holds a delivery slot, and once every slot is held new
    events are dropped.
    """

    def notify(self, recipient: str, event_kind: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Default notifier: records the event in the log and nothing else."""

    def notify(self, recipient: str, event_kind: str, payload: dict[str, Any]) -> None:
        logger.info(
            "notification",
            extra={"recipient": recipient, "event_kind": event_kind, "payload": payload},
        )


class WebhookNotifier:
    """POSTs each event as JSON to a collaborator endpoint."""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    def notify(self, recipient: str, event_kind: str, payload: dict[str, Any]) -> None:
        response = self.client.post(self.url, json={
            "recipient": recipient,
            "role": "doctor",
            "event_kind": event_kind,
            "payload": payload,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        })
        response.raise_for_status()

    def close(self) -> None:
        self.client.close()


class NotificationBridge:
    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        max_workers: int = 4,
        max_pending: int = DEFAULT_MAX_PENDING,
    ):
        self.notifier = notifier or LoggingNotifier()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="earnings-notify"
        )
        # queued plus running deliveries
        self._slots = threading.BoundedSemaphore(max_pending)

    def notify(self, doctor_id: str, event_kind: EventKind, **payload: Any) -> Optional[Future]:
        """
        Queue a delivery and return immediately.

        The returned future is for tests and shutdown draining only; ledger
        code never waits on it. Returns None when the event was dropped.
        """
        kind = EventKind(event_kind).value
        if not self._slots.acquire(blocking=False):
            logger.warning(
                "notification dropped",
                extra={"doctor_id": doctor_id, "event_kind": kind, "reason": "backlog_full"},
            )
            return None
        try:
            future = self._executor.submit(self._deliver, doctor_id, kind, payload)
        except RuntimeError:
            self._slots.release()
            logger.warning(
                "notification dropped",
                extra={"doctor_id": doctor_id, "event_kind": kind, "reason": "shut_down"},
            )
            return None
        future.add_done_callback(lambda _: self._slots.release())
        return future

    def _deliver(self, doctor_id: str, event_kind: str, payload: dict[str, Any]) -> bool:
        try:
            self.notifier.notify(doctor_id, event_kind, payload)
            return True
        except Exception:
            logger.warning(
                "notification delivery failed",
                extra={"doctor_id": doctor_id, "event_kind": event_kind},
                exc_info=True,
            )
            return False

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
