from __future__ import annotations
import itertools
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple, Union

from jibri_queue.types import EventKind
from shared.log import get_logger

logger = get_logger(__name__)


EventHandler = Callable[[Any], None]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by subscribe(); pass it to unsubscribe()."""
    kind: EventKind
    token: int


class EventEmitter:
    """
    Synchronous publish/subscribe for QueueClient events.

    Handlers run on the emitting thread, in subscription order. A handler
    that raises is logged and the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._tokens = itertools.count()
        self._handlers: Dict[EventKind, List[Tuple[int, EventHandler]]] = {
            kind: [] for kind in EventKind
        }

    def subscribe(self, kind: Union[EventKind, str], handler: EventHandler) -> Subscription:
        event_kind = _to_kind(kind)
        subscription = Subscription(event_kind, next(self._tokens))
        self._handlers[event_kind].append((subscription.token, handler))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove one handler; False if it was already removed."""
        handlers = self._handlers[subscription.kind]
        for index, (token, _) in enumerate(handlers):
            if token == subscription.token:
                del handlers[index]
                return True
        return False

    def emit(self, kind: Union[EventKind, str], payload: Any) -> int:
        """Deliver payload to every handler of kind; returns how many ran."""
        event_kind = _to_kind(kind)
        # Copy so handlers may unsubscribe while we iterate
        handlers = list(self._handlers[event_kind])
        for _, handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception("Listener for '%s' raised", event_kind.value)
        return len(handlers)

    def listener_count(self, kind: Union[EventKind, str]) -> int:
        return len(self._handlers[_to_kind(kind)])

    def clear(self) -> None:
        """Detach all handlers."""
        for handlers in self._handlers.values():
            handlers.clear()


def _to_kind(kind: Union[EventKind, str]) -> EventKind:
    try:
        return EventKind(kind)
    except ValueError:
        raise ValueError(f"Unknown event kind: {kind}")
