"""RideConnect Core - Ride session state machine, recovery, events and identity."""

from .events import Event, EventBus, EventType
from .identity import ActorProvider, EnvIdentity, StaticIdentity
from .recovery import RideSessionRecovery
from .session import RideSession, RideState, RideSummary

__all__ = [
    "ActorProvider",
    "EnvIdentity",
    "Event",
    "EventBus",
    "EventType",
    "RideSession",
    "RideSessionRecovery",
    "RideState",
    "RideSummary",
    "StaticIdentity",
]
