from collections import defaultdict, deque
from typing import Any, Awaitable, Callable, Deque, Dict, List
import structlog

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]

CLAIM_DENIED = "claim.denied"
CLAIM_STATUS_CHANGED = "claim.status_changed"
APPEAL_RESOLVED = "appeal.resolved"


class EventPublisher:
    """
    In-process publisher. Events are published after the producing transaction
    commits; a failing handler is logged and does not affect the producer.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self.published: Deque[Dict[str, Any]] = deque(maxlen=1000)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)
        logger.debug("Event handler subscribed", event_type=event_type, handler=getattr(handler, "__qualname__", repr(handler)))

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        event = {"type": event_type, **payload}
        self.published.append(event)
        for handler in list(self._handlers.get(event_type, [])):
            try:
                await handler(event)
            except Exception as e:
                logger.error("Event handler failed", event_type=event_type, error=str(e), exc_info=True)
