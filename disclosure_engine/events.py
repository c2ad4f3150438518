"""In-process publisher for the engine's domain events."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable, DefaultDict, List

from pydantic import BaseModel

logger = logging.getLogger(__name__)

CONFLICT_DETECTED = "conflict.detected"
THRESHOLD_TRIGGERED = "threshold.triggered"

Handler = Callable[[BaseModel], None]


class EventPublisher:
    """
    Synchronous fan-out to subscribed handlers. Case creation and notification
    collaborators subscribe here; a failing handler is logged and does not
    affect the evaluation that emitted the event.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: Handler) -> None:
        self._handlers[event_name].append(handler)

    def publish(self, event: BaseModel) -> None:
        name = getattr(event, "name")
        for handler in list(self._handlers.get(name, [])):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Handler {getattr(handler, '__name__', handler)!r} failed for {name}: {e}")


class RecordingPublisher(EventPublisher):
    """Publisher that also keeps every event it was given."""

    def __init__(self) -> None:
        super().__init__()
        self.events: List[BaseModel] = []

    def publish(self, event: BaseModel) -> None:
        self.events.append(event)
        super().publish(event)

    def named(self, event_name: str) -> List[BaseModel]:
        return [e for e in self.events if getattr(e, "name") == event_name]
