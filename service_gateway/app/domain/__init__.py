"""
Domain orchestration for the Gateway Service.

The dispatcher ties admission, credentials, translation and the upstream
client together for one inbound request.
"""

from .dispatcher import DispatchHook, DispatchResult, Dispatcher

__all__ = [
    "DispatchHook",
    "DispatchResult",
    "Dispatcher",
]
