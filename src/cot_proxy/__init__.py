from .augment import augment_messages
from .cancellation import CancellationContext
from .config import ProxyConfig
from .cot import ChainOfThoughtGenerator
from .cot_session import CoTSession
from .handlers import Handler
from .liveness import is_alive
from .relay import StreamRelay
from .routing import FallbackRouter, RouteDecision
from .tracker import Tracker, TrackerState

__all__ = [
    "CancellationContext",
    "ChainOfThoughtGenerator",
    "CoTSession",
    "FallbackRouter",
    "Handler",
    "ProxyConfig",
    "RouteDecision",
    "StreamRelay",
    "Tracker",
    "TrackerState",
    "augment_messages",
    "is_alive",
]
