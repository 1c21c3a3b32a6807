"""
Event System Module

Status-change notifications for loans and payments using a publish/subscribe
dispatcher. Events are published only after the owning transaction has
committed. Delivery is best effort: a failing or slow handler is logged and
never affects the transaction that produced the event.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from concurrent.futures import ThreadPoolExecutor
import uuid
import logging
from threading import RLock

from .config import LoanEngineConfig, get_config


class LoanEvent(Enum):
    """Status-change events emitted by the engine"""

    # Loan request events
    LOAN_REQUESTED = "loan.requested"
    LOAN_APPROVED = "loan.approved"
    LOAN_REJECTED = "loan.rejected"
    LOAN_CLOSED = "loan.closed"

    # Payment events
    PAYMENT_RECORDED = "payment.recorded"
    PAYMENT_ACCEPTED = "payment.accepted"
    PAYMENT_REJECTED = "payment.rejected"


@dataclass
class EventPayload:
    """Payload for status-change events"""
    event_type: LoanEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=LoanEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventDispatcher:
    """
    Central event dispatcher, publish/subscribe pattern.

    With ``max_workers > 0`` handlers run on a thread pool and ``publish``
    returns immediately; with ``max_workers == 0`` they run inline on the
    publishing thread (still isolated from the caller by error handling).
    """

    def __init__(self, max_workers: int = 0):
        self._handlers: Dict[LoanEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self._lock = RLock()  # Thread-safe access
        self._executor: Optional[ThreadPoolExecutor] = None
        if max_workers > 0:
            self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                                thread_name_prefix="loan-events")
        self.logger = logging.getLogger("loan_engine.events")

    def subscribe(self, event_type: LoanEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            if event_type not in self._handlers:
                self._handlers[event_type] = []
            self._handlers[event_type].append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: LoanEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            if event_type in self._handlers:
                try:
                    self._handlers[event_type].remove(handler)
                    self.logger.debug(f"Unsubscribed handler {_handler_name(handler)} from {event_type.value}")
                except ValueError:
                    self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers without blocking on delivery"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        if not handlers:
            return

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")

        if self._executor is None:
            self._deliver(event, handlers)
            return

        try:
            self._executor.submit(self._deliver, event, handlers)
        except RuntimeError as e:
            # Executor already shut down
            self.logger.error(f"Dropped event {event.event_type.value} for {event.entity_type}:{event.entity_id}: {e}")

    def _deliver(self, event: EventPayload, handlers: List[Callable]) -> None:
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the main operation
                self.logger.error(f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}")

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool, optionally waiting for queued deliveries"""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()
            self.logger.info("All event handlers cleared")

    def get_handler_count(self, event_type: Optional[LoanEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            else:
                total = sum(len(handlers) for handlers in self._handlers.values())
                total += len(self._global_handlers)
                return total

    def get_subscribed_events(self) -> List[LoanEvent]:
        """Get list of events that have subscribers"""
        with self._lock:
            return list(self._handlers.keys())


def create_dispatcher(config: Optional[LoanEngineConfig] = None) -> EventDispatcher:
    """Pooled dispatcher sized from configuration; publish never runs handlers inline"""
    config = config or get_config()
    return EventDispatcher(max_workers=max(1, config.notification_workers))


# Global event dispatcher instance (singleton pattern)
_global_dispatcher: Optional[EventDispatcher] = None


def get_global_dispatcher() -> EventDispatcher:
    """Get the global event dispatcher instance"""
    global _global_dispatcher
    if _global_dispatcher is None:
        _global_dispatcher = create_dispatcher()
    return _global_dispatcher


def set_global_dispatcher(dispatcher: EventDispatcher) -> None:
    """Set a custom global event dispatcher"""
    global _global_dispatcher
    _global_dispatcher = dispatcher


class EventPublisherMixin:
    """Mixin to add post-commit event publishing to engine components"""

    _event_dispatcher: Optional[EventDispatcher] = None

    def set_event_dispatcher(self, event_dispatcher: Optional[EventDispatcher]) -> None:
        """Set the event dispatcher for this instance"""
        self._event_dispatcher = event_dispatcher

    def publish_event(self, event_type: LoanEvent, entity_type: str, entity_id: str,
                      data: Dict[str, Any]) -> None:
        """Publish an event; must only be called after the transaction committed"""
        dispatcher = self._event_dispatcher or get_global_dispatcher()
        event = EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data
        )
        try:
            dispatcher.publish(event)
        except Exception as e:
            logging.getLogger("loan_engine.events").error(
                f"Failed to publish {event_type.value} for {entity_type}:{entity_id}: {e}"
            )


def loan_event_data(loan) -> Dict[str, Any]:
    """Event data for a loan request"""
    return {
        "member_id": loan.member_id,
        "status": loan.status.value,
        "requested_amount": str(loan.requested_amount),
        "installment_amount": str(loan.installment_amount),
        "implied_period": loan.implied_period,
        "deciding_admin_id": loan.deciding_admin_id,
        "admin_override": loan.admin_override,
    }


def payment_event_data(payment) -> Dict[str, Any]:
    """Event data for a loan payment"""
    return {
        "loan_id": payment.target_loan_id,
        "member_id": payment.member_id,
        "amount": str(payment.amount),
        "status": payment.status.value,
        "deciding_admin_id": payment.deciding_admin_id,
    }
