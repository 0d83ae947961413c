from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


ENVELOPE_VERSION = 1


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]

    @property
    def body(self) -> dict[str, Any]:
        """Domain payload carried inside an envelope; empty for bare events."""
        inner = self.payload.get("payload")
        return inner if isinstance(inner, dict) else {}


EventHandler = Callable[[InternalEvent], None]


def build_envelope(
    event_type: str,
    payload: dict[str, Any],
    *,
    actor_user_id: str | None,
    correlation_id: str | None,
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "correlation_id": correlation_id,
        "version": ENVELOPE_VERSION,
        "payload": payload,
    }


class InProcessEventBus:
    """Synchronous fan-out. Handlers run in subscription order on the publishing thread,
    after the publishing transaction has committed."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._subscribers[event_name].append(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in list(self._subscribers.get(event_name, [])):
            handler(event)
