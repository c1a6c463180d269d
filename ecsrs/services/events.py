"""Domain events emitted after a report transition has been committed."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional
from ecsrs.models.enums import ReportStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReportTransitioned:
    report_id: int
    tracking_code: str
    from_status: Optional[ReportStatus]
    to_status: ReportStatus
    update_id: int
    actor_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)


Handler = Callable[[ReportTransitioned], None]


class EventBus:
    """
    In-process fan-out of ReportTransitioned events.

    Delivery mechanisms (push channels, queues) subscribe independently. A
    failing subscriber is logged and skipped; it never affects the transition
    or the other subscribers.
    """

    def __init__(self):
        self._handlers: List[Handler] = []

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register a handler and return a callable that removes it."""
        self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(self, event: ReportTransitioned) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler %r failed for report %s (%s -> %s)",
                    handler, event.tracking_code, event.from_status, event.to_status
                )


# Process-wide bus used by the HTTP app
default_bus = EventBus()
