"""
Morphos - morphos/events.py
Event bus and canonical event keys for engine notifications.
============================================================
Stack:       Python 3.11+ | Pydantic v2 | bespoke pub-sub | structlog

Architecture notes
------------------
- All notifications are CreatureEvent envelopes (Pydantic v2 models).
- Engines emit after releasing their own locks, never while holding one.
- The bus is passed by reference at construction. No global singleton.
- Wildcard key "*" receives every emitted event.
- Per-handler errors are logged and swallowed so emission always
  continues to the remaining handlers.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from morphos.log import get_logger

logger = get_logger(__name__)

# ============================================================
# CANONICAL EVENT KEYS
# Never use raw strings. Add new keys here only.
# ============================================================

EVT_CHANGE_APPLIED        = "change.applied"
EVT_CHANGE_REJECTED       = "change.rejected"
EVT_CHANGE_CONFLICTING    = "change.conflicting"
EVT_CHANGE_UNDONE         = "change.undone"
EVT_BATCH_COMMITTED       = "batch.committed"
EVT_BATCH_DISCARDED       = "batch.discarded"

EVT_STRESS_THRESHOLD      = "stress.threshold_crossed"
EVT_STRESS_EXTINCTION     = "stress.extinction"

EVT_SYNTHESIS_STAGE       = "synthesis.stage_changed"
EVT_SYNTHESIS_COMPLETED   = "synthesis.completed"
EVT_SYNTHESIS_FAILED      = "synthesis.failed"
EVT_SYNTHESIS_LOST        = "synthesis.lost"

WILDCARD = "*"


class CreatureEvent(BaseModel):
    """Envelope for every notification. data stays flat and JSON-serializable."""
    event_key: str
    source: str
    target: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


HandlerFn = Callable[[CreatureEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: Dict[str, List[HandlerFn]] = {}

    def subscribe(self, event_key: str, handler: HandlerFn) -> None:
        self._subscribers.setdefault(event_key, []).append(handler)

    def unsubscribe(self, event_key: str, handler: HandlerFn) -> None:
        if event_key in self._subscribers:
            self._subscribers[event_key] = [
                h for h in self._subscribers[event_key] if h != handler
            ]

    def emit(self, event: CreatureEvent) -> None:
        targets = (
            self._subscribers.get(event.event_key, [])
            + self._subscribers.get(WILDCARD, [])
        )
        for handler in targets:
            try:
                handler(event)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "event_handler_failed",
                    event_key=event.event_key,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )


class EventRecorder:
    """Wildcard subscriber that keeps every event in order. Used by the loop and tests."""

    def __init__(self, bus: EventBus) -> None:
        self.events: List[CreatureEvent] = []
        bus.subscribe(WILDCARD, self.events.append)

    def of(self, event_key: str) -> List[CreatureEvent]:
        return [e for e in self.events if e.event_key == event_key]

    def clear(self) -> None:
        self.events.clear()
