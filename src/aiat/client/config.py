"""Runtime configuration for the orchestrator client.

``ClientConfig`` centralizes the connection, liveness, history and tunnel
knobs. Values come from keyword arguments or from ``AIAT_*`` environment
variables via :meth:`ClientConfig.from_env`.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from aiat.utils.env import env_bool, env_float, env_int, env_paths, env_str

DEFAULT_SERVER_URL = "ws://localhost:32080"
DEFAULT_TOOL_PORT = 9527


def normalize_ws_url(url: str) -> str:
    """Coerce *url* to a ``ws://`` or ``wss://`` base without a trailing slash."""

    url = (url or "").strip()
    if url.startswith("http://"):
        url = "ws://" + url[len("http://"):]
    elif url.startswith("https://"):
        url = "wss://" + url[len("https://"):]
    elif not url.startswith(("ws://", "wss://")):
        url = "ws://" + url
    return url.rstrip("/")


def http_base_url(ws_url: str) -> str:
    """Return the HTTP(S) base matching a normalized socket URL."""

    url = normalize_ws_url(ws_url)
    if url.startswith("wss://"):
        return "https://" + url[len("wss://"):]
    return "http://" + url[len("ws://"):]


@dataclass
class ClientConfig:
    server_url: str = DEFAULT_SERVER_URL
    auth_token: Optional[str] = None
    workspace_roots: List[str] = field(default_factory=list)
    tool_port: int = DEFAULT_TOOL_PORT

    # Connection and liveness (seconds)
    connect_timeout_s: float = 30.0
    heartbeat_interval_s: float = 30.0
    health_check_interval_s: float = 10.0
    liveness_timeout_s: float = 60.0
    reconnect_base_delay_s: float = 1.0
    reconnect_max_delay_s: float = 30.0
    max_reconnect_attempts: int = 5
    stop_timeout_s: float = 5.0

    # Message history
    history_path: Optional[str] = None
    history_max_messages: int = 1000
    history_max_runs: int = 50
    history_max_age_days: float = 7.0

    # Tool tunnel
    validate_tool_args: bool = False
    require_initialize: bool = False

    def __post_init__(self) -> None:
        self.server_url = normalize_ws_url(self.server_url)
        if self.auth_token == "":
            self.auth_token = None
        self.workspace_roots = [os.path.abspath(os.path.expanduser(p)) for p in self.workspace_roots]
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be >= 0")
        if self.history_max_messages <= 0 or self.history_max_runs <= 0:
            raise ValueError("history caps must be positive")

    @property
    def http_url(self) -> str:
        return http_base_url(self.server_url)

    @property
    def workspace_root(self) -> Optional[str]:
        return self.workspace_roots[0] if self.workspace_roots else None

    def run_url(self, run_id: str) -> str:
        url = f"{self.server_url}/ws/runs/{run_id}"
        if self.auth_token:
            url = f"{url}?token={self.auth_token}"
        return url

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data.get("auth_token"):
            data["auth_token"] = "***"
        return data

    @staticmethod
    def from_env(**overrides: Any) -> "ClientConfig":
        values: Dict[str, Any] = {
            "server_url": env_str("AIAT_SERVER_URL", DEFAULT_SERVER_URL) or DEFAULT_SERVER_URL,
            "auth_token": env_str("AIAT_AUTH_TOKEN"),
            "workspace_roots": env_paths("AIAT_WORKSPACE", (os.getcwd(),)),
            "tool_port": env_int("AIAT_SERVER_PORT", DEFAULT_TOOL_PORT),
            "connect_timeout_s": env_float("AIAT_CONNECT_TIMEOUT_S", 30.0),
            "heartbeat_interval_s": env_float("AIAT_HEARTBEAT_INTERVAL_S", 30.0),
            "health_check_interval_s": env_float("AIAT_HEALTH_CHECK_INTERVAL_S", 10.0),
            "liveness_timeout_s": env_float("AIAT_LIVENESS_TIMEOUT_S", 60.0),
            "reconnect_base_delay_s": env_float("AIAT_RECONNECT_BASE_DELAY_S", 1.0),
            "reconnect_max_delay_s": env_float("AIAT_RECONNECT_MAX_DELAY_S", 30.0),
            "max_reconnect_attempts": env_int("AIAT_MAX_RECONNECT_ATTEMPTS", 5),
            "stop_timeout_s": env_float("AIAT_STOP_TIMEOUT_S", 5.0),
            "history_path": env_str("AIAT_HISTORY_PATH"),
            "history_max_messages": env_int("AIAT_HISTORY_MAX_MESSAGES", 1000),
            "history_max_runs": env_int("AIAT_HISTORY_MAX_RUNS", 50),
            "history_max_age_days": env_float("AIAT_HISTORY_MAX_AGE_DAYS", 7.0),
            "validate_tool_args": env_bool("AIAT_VALIDATE_TOOL_ARGS", False),
            "require_initialize": env_bool("AIAT_REQUIRE_INITIALIZE", False),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return ClientConfig(**values)


__all__ = ["ClientConfig", "DEFAULT_SERVER_URL", "DEFAULT_TOOL_PORT", "http_base_url", "normalize_ws_url"]
