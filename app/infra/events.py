from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

from sqlmodel import Session

from app.domain.models import EventEnvelope, EventRecord
from app.infra.db import engine

EventHandler = Callable[[EventEnvelope], None]

WILDCARD = "*"


def _topics_for(event_type: str) -> list[str]:
    """``task.status_changed`` is delivered to ``task.status_changed``, ``task.*`` and ``*``."""
    topics = [event_type]
    head, _, _ = event_type.partition(".")
    if head != event_type:
        topics.append(f"{head}.{WILDCARD}")
    topics.append(WILDCARD)
    return topics


def _to_record(event: EventEnvelope) -> EventRecord:
    return EventRecord(
        event_id=event.event_id,
        event_type=event.event_type,
        ts=event.ts,
        actor_id=event.actor_id,
        correlation_id=event.correlation_id,
        payload=event.payload,
    )


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: EventHandler) -> None:
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        # With a caller session the record joins the caller's transaction.
        if session is not None:
            session.add(_to_record(event))
        else:
            with Session(engine) as own_session:
                own_session.add(_to_record(event))
                own_session.commit()
        self.dispatch(event)

    def stage(
        self,
        session: Session,
        event_type: str,
        payload: dict[str, Any],
        *,
        actor_id: str | None = None,
        correlation_id: str | None = None,
    ) -> EventEnvelope:
        """Add the record to ``session`` without dispatching; call ``dispatch`` once it commits."""
        event = EventEnvelope(
            event_type=event_type,
            actor_id=actor_id,
            correlation_id=correlation_id,
            payload=payload,
        )
        session.add(_to_record(event))
        return event

    def dispatch(self, event: EventEnvelope) -> None:
        for topic in _topics_for(event.event_type):
            for handler in list(self._subscribers.get(topic, [])):
                handler(event)


event_bus = EventBus()
