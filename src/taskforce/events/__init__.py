"""Lifecycle event system."""

from .manager import EventManager
from .models import Event, EventType

__all__ = ["EventManager", "Event", "EventType"]
