from .config import Settings
from .events import BlockHeader
from .handlers import ConsoleHandler, EventHandler, MultiHandler
from .monitor import Monitor, MonitorError, MonitorState, NodeConnectionError, SubscriptionError

__all__ = [
    "BlockHeader",
    "ConsoleHandler",
    "EventHandler",
    "Monitor",
    "MonitorError",
    "MonitorState",
    "MultiHandler",
    "NodeConnectionError",
    "Settings",
    "SubscriptionError",
]
