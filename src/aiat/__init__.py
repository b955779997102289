"""
aiat: resilient client for the AIAT agent orchestrator.

The client keeps a WebSocket session to the orchestrator, mirrors connection
and task state, exposes local tools to the remote peer over a JSON-RPC tunnel
and archives every protocol event per run.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
