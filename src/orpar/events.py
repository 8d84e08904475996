"""Observability events for the ORPAR memory subsystem.

Components emit events through an injected EventBus so that external
consumers (dashboards, audit logs, tests) can follow cycle activity.
Events are best-effort telemetry: a failing subscriber is logged and
never affects the emitting component.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_AGENT_ID = "system"
DEFAULT_CHANNEL_ID = "global"


class OrparMemoryEvent(str, Enum):
    """Events emitted by the ORPAR memory integration."""

    # Phase routing
    PHASE_MEMORY_RETRIEVED = "orparMemory:phase:memory:retrieved"
    PHASE_MEMORY_STORED = "orparMemory:phase:memory:stored"
    PHASE_STRATA_CONFIG_UPDATED = "orparMemory:phase:strata:config:updated"

    # Surprise handling
    SURPRISE_DETECTED = "orparMemory:surprise:detected"
    SURPRISE_DECISION_MADE = "orparMemory:surprise:decision:made"
    ADDITIONAL_OBSERVATION_QUEUED = "orparMemory:surprise:observation:queued"
    SURPRISE_CONTEXT_INJECTED = "orparMemory:surprise:context:injected"
    PLAN_RECONSIDERATION_TRIGGERED = "orparMemory:surprise:plan:reconsider"

    # Reward attribution
    PHASE_REWARD_CALCULATED = "orparMemory:reward:calculated"
    PHASE_REWARD_ATTRIBUTED = "orparMemory:reward:attributed"
    PHASE_REWARDS_BATCH_APPLIED = "orparMemory:reward:batch:applied"

    # Consolidation
    CONSOLIDATION_TRIGGERED = "orparMemory:consolidation:triggered"
    MEMORY_PROMOTED = "orparMemory:consolidation:promoted"
    MEMORY_DEMOTED = "orparMemory:consolidation:demoted"
    MEMORY_ARCHIVED = "orparMemory:consolidation:archived"
    MEMORY_ABSTRACTED = "orparMemory:consolidation:abstracted"

    # Cycle lifecycle
    CYCLE_STARTED = "orparMemory:cycle:started"
    PHASE_CHANGED = "orparMemory:cycle:phase:changed"
    CYCLE_COMPLETED = "orparMemory:cycle:completed"
    CYCLE_MEMORY_USAGE_RECORDED = "orparMemory:cycle:memory:recorded"

    # Errors
    PHASE_ROUTING_ERROR = "orparMemory:error:phase:routing"
    SURPRISE_PROCESSING_ERROR = "orparMemory:error:surprise"
    REWARD_ATTRIBUTION_ERROR = "orparMemory:error:reward"
    CONSOLIDATION_ERROR = "orparMemory:error:consolidation"


class MemoryUtilityEvent(str, Enum):
    """Events emitted by the Q-value store."""

    QVALUE_UPDATED = "memory:qvalue:updated"
    QVALUE_BATCH_UPDATED = "memory:qvalue:batch_updated"


EventName = OrparMemoryEvent | MemoryUtilityEvent


@dataclass
class EmittedEvent:
    """A single event as delivered to subscribers."""

    name: str
    agent_id: str
    channel_id: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "name": self.name,
            "agent_id": self.agent_id,
            "channel_id": self.channel_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[EmittedEvent], None]


class EventBus:
    """Publish/subscribe hub for observability events.

    Subscribers are called synchronously in registration order. Recent
    events are kept in a bounded history for diagnostics.
    """

    def __init__(self, history_limit: int = 500):
        """Initialize the bus.

        Args:
            history_limit: Number of recent events to retain
        """
        self._handlers: dict[str, list[EventHandler]] = {}
        self._wildcard_handlers: list[EventHandler] = []
        self._history: list[EmittedEvent] = []
        self._history_limit = history_limit

    def subscribe(self, event: EventName | str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler for one event name.

        Args:
            event: Event to listen for
            handler: Callable receiving the EmittedEvent

        Returns:
            Callable that removes the subscription
        """
        name = _event_name(event)
        self._handlers.setdefault(name, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(name, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler that receives every event."""
        self._wildcard_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._wildcard_handlers:
                self._wildcard_handlers.remove(handler)

        return unsubscribe

    def emit(
        self,
        event: EventName | str,
        payload: dict[str, Any],
        agent_id: str | None = None,
        channel_id: str | None = None,
    ) -> EmittedEvent:
        """Deliver an event to its subscribers.

        Args:
            event: Event name
            payload: Event-specific data
            agent_id: Emitting agent, defaults to "system"
            channel_id: Channel scope, defaults to "global"

        Returns:
            The delivered event
        """
        emitted = EmittedEvent(
            name=_event_name(event),
            agent_id=agent_id or DEFAULT_AGENT_ID,
            channel_id=channel_id or DEFAULT_CHANNEL_ID,
            payload=payload,
        )

        self._history.append(emitted)
        if len(self._history) > self._history_limit:
            self._history = self._history[-self._history_limit:]

        for handler in [*self._handlers.get(emitted.name, []), *self._wildcard_handlers]:
            try:
                handler(emitted)
            except Exception as e:
                logger.warning(f"Event handler failed for {emitted.name}: {e}")

        return emitted

    def get_history(self, event: EventName | str | None = None) -> list[EmittedEvent]:
        """Get recent events, optionally filtered by name."""
        if event is None:
            return list(self._history)
        name = _event_name(event)
        return [e for e in self._history if e.name == name]

    def clear_history(self) -> None:
        """Drop retained event history."""
        self._history = []


def _event_name(event: EventName | str) -> str:
    return event.value if isinstance(event, Enum) else event
