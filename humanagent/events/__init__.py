from humanagent.events.event_bus import EventBus
from humanagent.events.event_bus import EventType
from humanagent.events.event_bus import event_bus

__all__ = ["EventBus", "EventType", "event_bus"]
