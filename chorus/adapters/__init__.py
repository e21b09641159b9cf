"""Adapters package - Bridge between the engine and UI frontends.

Typed events and the many-listener event bus that frontends subscribe
to.
"""
from __future__ import annotations

__all__ = [
    "ChorusEvent",
    "EventBus",
    "Subscription",
    "dict_to_event",
    "event_to_dict",
]

from chorus.adapters.event_bus import EventBus, Subscription
from chorus.adapters.events import ChorusEvent, dict_to_event, event_to_dict
