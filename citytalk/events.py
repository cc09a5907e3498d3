"""Typed lifecycle events and the dispatcher that delivers them.

Events form a closed union discriminated by ``kind``. Listeners subscribe by
event class, so a typo in a subscription is an ``AttributeError`` at import
time instead of a silently dead handler.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Callable, Dict, List, Literal, Type, TypeVar, Union

from pydantic import BaseModel, Field

from .logging_utils import log_error
from .schemas import ConversationMetrics, Message, TerminationReason


class ConversationStarted(BaseModel):
    kind: Literal["conversation_started"] = "conversation_started"
    conversation_id: str
    participants: List[str]
    district_id: str
    location: str
    activity: str
    topic: str
    timestamp: datetime


class MessageAdded(BaseModel):
    kind: Literal["message_added"] = "message_added"
    conversation_id: str
    district_id: str
    message: Message


class TopicShifted(BaseModel):
    kind: Literal["topic_shifted"] = "topic_shifted"
    conversation_id: str
    previous_topic: str
    new_topic: str
    trigger: str
    timestamp: datetime


class ConversationEnded(BaseModel):
    kind: Literal["conversation_ended"] = "conversation_ended"
    conversation_id: str
    district_id: str
    reason: TerminationReason
    # True when the conversation was cut short by the daily budget rather than
    # reaching a natural or policy-driven ending.
    resource_exhausted: bool = False
    duration_seconds: float
    message_count: int
    final_metrics: ConversationMetrics
    timestamp: datetime


ConversationEvent = Annotated[
    Union[ConversationStarted, MessageAdded, TopicShifted, ConversationEnded],
    Field(discriminator="kind"),
]

EventT = TypeVar("EventT", ConversationStarted, MessageAdded, TopicShifted, ConversationEnded)
Listener = Callable[[EventT], None]


class EventDispatcher:
    """Explicitly constructed pub/sub for lifecycle events.

    Each engine owns its own dispatcher, so tests and multiple engines never
    share subscriptions. Listener failures are logged and do not reach the
    publisher.
    """

    def __init__(self) -> None:
        self._listeners: Dict[type, List[Callable[[BaseModel], None]]] = {}

    def subscribe(self, event_type: Type[EventT], listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``event_type``; returns an unsubscribe callable."""

        bucket = self._listeners.setdefault(event_type, [])
        bucket.append(listener)

        def _unsubscribe() -> None:
            if listener in bucket:
                bucket.remove(listener)

        return _unsubscribe

    def publish(self, event: BaseModel) -> None:
        for listener in list(self._listeners.get(type(event), [])):
            try:
                listener(event)
            except Exception as exc:
                log_error(f"[Events] Listener for {type(event).__name__} failed: {exc}")


class EventRecorder:
    """Listener that keeps every event it receives, in order."""

    def __init__(self, dispatcher: EventDispatcher) -> None:
        self.events: List[BaseModel] = []
        for event_type in (ConversationStarted, MessageAdded, TopicShifted, ConversationEnded):
            dispatcher.subscribe(event_type, self.events.append)

    def of_type(self, event_type: Type[EventT]) -> List[EventT]:
        return [event for event in self.events if isinstance(event, event_type)]
