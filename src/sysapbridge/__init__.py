"""sysapbridge: drive Busch-Jaeger System Access Point actuators over XMPP.

Key building blocks:
  - CommandEngine  — validates and resolves ``(type, serial, channel, action)``
  - Dispatcher     — resolves value markers against live state and sends writes
  - Session        — the XMPP session with the hub (keepalive, subscription, reconnect)
  - StateStore     — actuator datapoint values kept current from hub frames
"""

from .commands import COMMANDS, CommandEngine
from .dispatcher import DispatchError, Dispatcher
from .models import Actuator, Channel, CommandError, CommandOk, DatapointWrite
from .session import Session, SessionState
from .store import StateStore

__version__ = "0.1.0"
__all__ = [
    "COMMANDS",
    "CommandEngine",
    "DispatchError",
    "Dispatcher",
    "Actuator",
    "Channel",
    "CommandError",
    "CommandOk",
    "DatapointWrite",
    "Session",
    "SessionState",
    "StateStore",
]
