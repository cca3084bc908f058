"""Lifecycle hook execution."""

from rudder.manifest import Hook, HookDeletePolicy, HookEvent, HookMetadata

from .scheduler import HookScheduler, hooks_for_event

__all__ = [
    "Hook",
    "HookDeletePolicy",
    "HookEvent",
    "HookMetadata",
    "HookScheduler",
    "hooks_for_event",
]
