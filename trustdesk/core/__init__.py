"""Configuration, logging, clock and identity primitives."""

from .clock import Clock, SystemClock
from .identity import SYSTEM_ACTOR, Identity, Role

__all__ = ["Clock", "Identity", "Role", "SYSTEM_ACTOR", "SystemClock"]
