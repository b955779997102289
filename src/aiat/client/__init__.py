"""aiat client components: connection, task state and retry handling."""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "AgentClient",
    "ClientConfig",
    "ClientError",
    "ConnectionState",
    "ErrorCategory",
    "ErrorSeverity",
    "StateManager",
    "TaskState",
    "main",
]


def _lazy_attr(name: str) -> Any:
    module_map = {
        "AgentClient": ("aiat.client.agent_client", "AgentClient"),
        "ClientConfig": ("aiat.client.config", "ClientConfig"),
        "ClientError": ("aiat.client.errors", "ClientError"),
        "ErrorCategory": ("aiat.client.errors", "ErrorCategory"),
        "ErrorSeverity": ("aiat.client.errors", "ErrorSeverity"),
        "ConnectionState": ("aiat.client.state_manager", "ConnectionState"),
        "StateManager": ("aiat.client.state_manager", "StateManager"),
        "TaskState": ("aiat.client.state_manager", "TaskState"),
        "main": ("aiat.client.launcher", "main"),
    }
    if name not in module_map:
        raise AttributeError(name)
    module_path, attr = module_map[name]
    module = import_module(module_path)
    return getattr(module, attr)


def __getattr__(name: str) -> Any:  # pragma: no cover - trivial delegation
    return _lazy_attr(name)
