"""
Pipeline Events
===============

State transitions published to the presentation layer. The pipeline
never pushes notifications itself; subscribers decide what to show.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of pipeline events."""
    TASK_CREATED = "task_created"
    TASK_STATUS_CHANGED = "task_status_changed"
    STAGE_STATUS_CHANGED = "stage_status_changed"


@dataclass
class PipelineEvent:
    """Event payload."""
    type: EventType
    task_id: str
    status: str
    execution_id: Optional[str] = None
    stage_template_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[PipelineEvent], Union[None, Awaitable[None]]]


class PipelineEvents:
    """
    In-process fan-out of pipeline events.

    Subscribers may be plain or async callables. A failing subscriber is
    logged and does not affect the others or the transition itself.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber. Returns a function that unsubscribes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    async def emit(self, event: PipelineEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(event)
                if isinstance(result, Awaitable):
                    await result
            except Exception:
                logger.exception(f"Event subscriber failed for {event.type.value}")
