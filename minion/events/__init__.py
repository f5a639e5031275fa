"""In-process event fan-out."""

from minion.events.event_bus import EventBus, Subscription, SubscriptionClosed
from minion.events.models import (
    EVENT_KINDS,
    AgentCreated,
    AgentLog,
    AgentRemoved,
    AgentStatusChanged,
    AgentStopped,
    BaseEvent,
    Event,
    TaskCompleted,
    TaskErrored,
    TaskStatusChanged,
)

__all__ = [
    "EVENT_KINDS",
    "AgentCreated",
    "AgentLog",
    "AgentRemoved",
    "AgentStatusChanged",
    "AgentStopped",
    "BaseEvent",
    "Event",
    "EventBus",
    "Subscription",
    "SubscriptionClosed",
    "TaskCompleted",
    "TaskErrored",
    "TaskStatusChanged",
]
