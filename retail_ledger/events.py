"""
Event System Module

Publish/subscribe dispatcher for post-commit side effects. Events are only
published after the owning unit of work has committed, and delivery is
best-effort: a failing handler is logged and never reaches the publisher.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from queue import Queue
import threading
import uuid

from .logging_config import get_logger


class LedgerEvent(Enum):
    """Events emitted by the ledger engine after commit"""
    ACCOUNT_OPENED = "account.opened"
    DEPOSIT_COMMITTED = "deposit.committed"
    WITHDRAWAL_COMMITTED = "withdrawal.committed"
    TRANSFER_COMMITTED = "transfer.committed"
    LOW_BALANCE = "account.low_balance"


@dataclass
class EventPayload:
    """Payload for ledger events"""
    event_type: LedgerEvent
    account_id: int
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'account_id': self.account_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=LedgerEvent(data['event_type']),
            account_id=data['account_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


_STOP = object()


class EventDispatcher:
    """
    Central event dispatcher

    With ``asynchronous=True`` events are queued and delivered by a daemon
    worker thread, so publishing returns immediately.
    """

    def __init__(self, asynchronous: bool = False):
        self._handlers: Dict[LedgerEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = threading.RLock()
        self.logger = get_logger("retail_ledger.events")
        self.asynchronous = asynchronous
        self.delivery_failures = 0

        self._queue: Optional[Queue] = None
        self._worker: Optional[threading.Thread] = None
        if asynchronous:
            self._queue = Queue()
            self._worker = threading.Thread(
                target=self._run_worker, name="ledger-event-dispatcher", daemon=True
            )
            self._worker.start()

    def subscribe(self, event_type: LedgerEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {self._name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {self._name(handler)}")

    def unsubscribe(self, event_type: LedgerEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {self._name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        if self._queue is not None:
            self._queue.put(event)
        else:
            self._deliver(event)

    def _deliver(self, event: EventPayload) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for account {event.account_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the committed operation
                with self._lock:
                    self.delivery_failures += 1
                self.logger.error(
                    f"Error in event handler {self._name(handler)} for {event.event_type.value}: {e}",
                    exc_info=True
                )

    def _run_worker(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self._deliver(event)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued event has been delivered"""
        if self._queue is not None:
            self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        """Deliver outstanding events and stop the worker"""
        if self._queue is not None and self._worker is not None:
            self._queue.put(_STOP)
            self._worker.join(timeout)
            self._worker = None
            # Later events are delivered inline
            self._queue = None

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[LedgerEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)

    @staticmethod
    def _name(handler: Callable) -> str:
        return getattr(handler, "__name__", repr(handler))
