"""Wire protocol definitions for the orchestrator run socket."""

from __future__ import annotations

from .jsonrpc import *  # noqa: F401,F403
from .messages import *  # noqa: F401,F403

__all__ = [name for name in globals().keys() if not name.startswith("_")]
