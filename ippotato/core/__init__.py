"""Core components of ip-potato."""

from .lifecycle import LifecycleController, ServerState, listen_and_serve

__all__ = ["LifecycleController", "ServerState", "listen_and_serve"]
