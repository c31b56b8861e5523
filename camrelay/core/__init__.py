"""Relay core: registry, frame cache, fan-out, correlation, liveness and session gate."""
from .broadcaster import Broadcaster, Subscription
from .correlator import CommandCorrelator, PendingCommand
from .frame_cache import FrameCache
from .liveness import LivenessSupervisor
from .registry import ConnectionRegistry, DeviceConnection
from .session_gate import SessionGate

__all__ = [
    "Broadcaster",
    "CommandCorrelator",
    "ConnectionRegistry",
    "DeviceConnection",
    "FrameCache",
    "LivenessSupervisor",
    "PendingCommand",
    "SessionGate",
    "Subscription",
]
