"""Tool tunnel: JSON-RPC responder and the registry it serves."""

from __future__ import annotations

from .rpc_tunnel import ProtocolTunnel
from .tool_registry import FunctionTool, Tool, ToolDefinition, ToolNotFoundError, ToolRegistry

__all__ = [name for name in globals().keys() if not name.startswith("_")]
