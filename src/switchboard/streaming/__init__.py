from switchboard.streaming.connections import ConnectionManager, ProgressConnection, SSETransport
from switchboard.streaming.events import EventType, format_event

__all__ = ["ConnectionManager", "EventType", "ProgressConnection", "SSETransport", "format_event"]
