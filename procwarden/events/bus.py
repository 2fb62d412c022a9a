"""Lifecycle event log.

The supervisor records every state change here; /api/events reads it
back. Topics look like ``process.running`` or ``supervisor.stopping``,
and history queries take fnmatch patterns such as ``process.*``.

Emitting and reading both happen on the event loop, so no locking.
"""

from __future__ import annotations

import fnmatch
import itertools
from collections import deque
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class Event(BaseModel):
    seq: int
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = "supervisor"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    """Bounded, ordered record of lifecycle events."""

    def __init__(self, history_limit: int = 500) -> None:
        self._events: deque[Event] = deque(maxlen=history_limit)
        self._seq = itertools.count(1)

    def emit(self, topic: str, data: dict[str, Any] | None = None, source: str = "supervisor") -> Event:
        event = Event(seq=next(self._seq), topic=topic, data=dict(data or {}), source=source)
        self._events.append(event)
        return event

    def history(self, topic_filter: str = "*", limit: int = 50) -> list[Event]:
        """Newest first, at most ``limit`` events whose topic matches ``topic_filter``."""
        if limit <= 0:
            return []
        matched: list[Event] = []
        for event in reversed(self._events):
            if topic_filter == "*" or fnmatch.fnmatchcase(event.topic, topic_filter):
                matched.append(event)
                if len(matched) == limit:
                    break
        return matched
