"""Orchestrator message shapes.

Every frame on the run socket is a JSON object discriminated by ``type``.
The dataclasses below give each known type a fixed shape; :class:`MessageParser`
turns decoded mappings into those shapes and :func:`render_content` produces the
human readable line that is archived next to the raw payload.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union

SYSTEM_TYPE = "system"
MESSAGE_TYPE = "message"
RESULT_TYPE = "result"
COMPLETION_TYPE = "completion"
INPUT_REQUEST_TYPE = "input_request"
STOP_TYPE = "stop"
ERROR_TYPE = "error"
PONG_TYPE = "pong"
PING_TYPE = "ping"
START_TYPE = "start"
INPUT_RESPONSE_TYPE = "input_response"
RAW_TYPE = "raw"

MCP_REQUEST_TYPE = "mcp_request"
MCP_RESPONSE_TYPE = "mcp_response"
MCP_REGISTER_TYPE = "mcp_register"
TUNNEL_TYPES = frozenset({MCP_REQUEST_TYPE, MCP_RESPONSE_TYPE, MCP_REGISTER_TYPE})

INCOMING = "incoming"
OUTGOING = "outgoing"

RESULT_STATUS_COMPLETE = "complete"
RESULT_STATUS_PARTIAL = "partial"
COMPLETION_STATUS_CANCELLED = "cancelled"
COMPLETION_STATUS_COMPLETE = ("complete", "completed")


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _dump(value: Any, *, indent: int | None = None) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(value)


@dataclass(frozen=True, slots=True)
class SystemMessage:
    type: ClassVar[str] = SYSTEM_TYPE
    status: Optional[str]
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True, slots=True)
class ChatMessage:
    type: ClassVar[str] = MESSAGE_TYPE
    name: Optional[str]
    content: Optional[str]
    source: Optional[str]
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True, slots=True)
class ResultEntry:
    name: Optional[str]
    content: str


@dataclass(frozen=True, slots=True)
class ResultMessage:
    type: ClassVar[str] = RESULT_TYPE
    status: Optional[str]
    entries: Tuple[ResultEntry, ...]
    stop_reason: Optional[str]
    raw: Mapping[str, Any] = field(repr=False)

    @property
    def is_complete(self) -> bool:
        return self.status == RESULT_STATUS_COMPLETE

    @property
    def is_partial(self) -> bool:
        return self.status == RESULT_STATUS_PARTIAL


@dataclass(frozen=True, slots=True)
class CompletionMessage:
    type: ClassVar[str] = COMPLETION_TYPE
    status: Optional[str]
    stop_reason: Optional[str]
    raw: Mapping[str, Any] = field(repr=False)

    @property
    def is_cancelled(self) -> bool:
        return self.status == COMPLETION_STATUS_CANCELLED

    @property
    def is_complete(self) -> bool:
        return self.status in COMPLETION_STATUS_COMPLETE


@dataclass(frozen=True, slots=True)
class InputRequestMessage:
    type: ClassVar[str] = INPUT_REQUEST_TYPE
    prompt: Optional[str]
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True, slots=True)
class StopMessage:
    type: ClassVar[str] = STOP_TYPE
    reason: Optional[str]
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True, slots=True)
class ErrorMessage:
    type: ClassVar[str] = ERROR_TYPE
    error: str
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True, slots=True)
class PongMessage:
    type: ClassVar[str] = PONG_TYPE
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True, slots=True)
class PingMessage:
    type: ClassVar[str] = PING_TYPE
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True, slots=True)
class StartMessage:
    type: ClassVar[str] = START_TYPE
    task: Optional[str]
    team_config: Mapping[str, Any]
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True, slots=True)
class InputResponseMessage:
    type: ClassVar[str] = INPUT_RESPONSE_TYPE
    response: Optional[str]
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True, slots=True)
class RawMessage:
    type: ClassVar[str] = RAW_TYPE
    text: str
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True, slots=True)
class UnknownMessage:
    """Any frame whose ``type`` is not part of the taxonomy."""

    message_type: str
    raw: Mapping[str, Any] = field(repr=False)

    @property
    def type(self) -> str:
        return self.message_type


ProtocolMessage = Union[
    SystemMessage,
    ChatMessage,
    ResultMessage,
    CompletionMessage,
    InputRequestMessage,
    StopMessage,
    ErrorMessage,
    PongMessage,
    PingMessage,
    StartMessage,
    InputResponseMessage,
    RawMessage,
    UnknownMessage,
]


class MessageParser:
    """Parse decoded JSON mappings into :data:`ProtocolMessage` variants."""

    def parse(self, data: Mapping[str, Any]) -> ProtocolMessage:
        if not isinstance(data, Mapping):
            raise ValueError("Protocol message must be a mapping")
        msg_type = str(data.get("type") or "unknown")
        loader = _LOADERS.get(msg_type)
        if loader is None:
            return UnknownMessage(message_type=msg_type, raw=data)
        return loader(data)

    def parse_text(self, text: str | bytes | bytearray) -> ProtocolMessage:
        """Decode one wire frame; undecodable payloads become :class:`RawMessage`."""

        if isinstance(text, (bytes, bytearray)):
            text = bytes(text).decode("utf-8", errors="replace")
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return raw_message(text)
        if not isinstance(data, Mapping):
            return raw_message(text)
        return self.parse(data)


_PARSER = MessageParser()


def parse_message(data: Mapping[str, Any]) -> ProtocolMessage:
    return _PARSER.parse(data)


def parse_frame(text: str | bytes | bytearray) -> ProtocolMessage:
    return _PARSER.parse_text(text)


def raw_message(text: str) -> RawMessage:
    return RawMessage(text=text, raw={"type": RAW_TYPE, "content": text})


def _load_system(data: Mapping[str, Any]) -> SystemMessage:
    return SystemMessage(status=_opt_str(data.get("status")), raw=data)


def _load_chat(data: Mapping[str, Any]) -> ChatMessage:
    body = _as_mapping(data.get("data"))
    return ChatMessage(
        name=_opt_str(body.get("name")),
        content=_opt_str(body.get("content")),
        source=_opt_str(body.get("source")),
        raw=data,
    )


def _load_result(data: Mapping[str, Any]) -> ResultMessage:
    body = _as_mapping(data.get("data"))
    task_result = _as_mapping(body.get("task_result"))
    entries = []
    raw_entries = task_result.get("messages")
    if isinstance(raw_entries, (list, tuple)):
        for entry in raw_entries:
            entry_map = _as_mapping(entry)
            entries.append(
                ResultEntry(
                    name=_opt_str(entry_map.get("name")),
                    content=_opt_str(entry_map.get("content")) or "",
                )
            )
    status = body.get("status", data.get("status"))
    return ResultMessage(
        status=_opt_str(status),
        entries=tuple(entries),
        stop_reason=_opt_str(task_result.get("stop_reason")),
        raw=data,
    )


def _load_completion(data: Mapping[str, Any]) -> CompletionMessage:
    body = _as_mapping(data.get("data"))
    status = data.get("status", body.get("status"))
    return CompletionMessage(
        status=_opt_str(status),
        stop_reason=_opt_str(body.get("stop_reason", data.get("stop_reason"))),
        raw=data,
    )


def _load_input_request(data: Mapping[str, Any]) -> InputRequestMessage:
    return InputRequestMessage(prompt=_opt_str(data.get("prompt")), raw=data)


def _load_stop(data: Mapping[str, Any]) -> StopMessage:
    return StopMessage(reason=_opt_str(data.get("reason")), raw=data)


def _load_error(data: Mapping[str, Any]) -> ErrorMessage:
    error = data.get("error", data.get("message"))
    if isinstance(error, Mapping):
        error = error.get("message") or _dump(error)
    return ErrorMessage(error=_opt_str(error) or "unknown error", raw=data)


def _load_start(data: Mapping[str, Any]) -> StartMessage:
    return StartMessage(
        task=_opt_str(data.get("task")),
        team_config=_as_mapping(data.get("team_config")),
        raw=data,
    )


def _load_input_response(data: Mapping[str, Any]) -> InputResponseMessage:
    return InputResponseMessage(response=_opt_str(data.get("response")), raw=data)


def _load_raw(data: Mapping[str, Any]) -> RawMessage:
    return RawMessage(text=_opt_str(data.get("content")) or "", raw=data)


_LOADERS = {
    SYSTEM_TYPE: _load_system,
    MESSAGE_TYPE: _load_chat,
    RESULT_TYPE: _load_result,
    COMPLETION_TYPE: _load_completion,
    INPUT_REQUEST_TYPE: _load_input_request,
    STOP_TYPE: _load_stop,
    ERROR_TYPE: _load_error,
    PONG_TYPE: lambda data: PongMessage(raw=data),
    PING_TYPE: lambda data: PingMessage(raw=data),
    START_TYPE: _load_start,
    INPUT_RESPONSE_TYPE: _load_input_response,
    RAW_TYPE: _load_raw,
}


def render_content(message: ProtocolMessage) -> Optional[str]:
    """Return the display text archived alongside *message*."""

    if isinstance(message, SystemMessage):
        return f"system status: {message.status}"
    if isinstance(message, ChatMessage):
        if message.name:
            return f"[{message.name}] {message.content or ''}"
        return message.content or _dump(message.raw)
    if isinstance(message, ResultMessage):
        if message.entries:
            return "\n\n".join(
                f"[{entry.name}] {entry.content}" if entry.name else entry.content
                for entry in message.entries
            )
        return f"({message.status}): {_dump(message.raw)}"
    if isinstance(message, CompletionMessage):
        if message.is_cancelled:
            return "task cancelled"
        if message.is_complete:
            return "task completed"
        return f"task finished ({message.status}): {message.stop_reason or ''}"
    if isinstance(message, InputRequestMessage):
        return f"input requested: {message.prompt or 'please respond'}"
    if isinstance(message, StopMessage):
        return message.reason or "stop requested by user"
    if isinstance(message, ErrorMessage):
        return f"error: {message.error}"
    if isinstance(message, (PongMessage, PingMessage)):
        return None
    if isinstance(message, StartMessage):
        return message.task
    if isinstance(message, InputResponseMessage):
        return message.response
    if isinstance(message, RawMessage):
        return message.text
    if isinstance(message, UnknownMessage):
        return _dump(message.raw, indent=2)
    raise TypeError(f"unsupported protocol message: {type(message).__name__}")


def message_source(message: ProtocolMessage) -> Optional[str]:
    if isinstance(message, ChatMessage):
        return message.source
    if isinstance(message, StartMessage):
        team_id = message.team_config.get("id")
        if team_id:
            return f"team_{team_id}"
    return None


def message_direction(message: ProtocolMessage) -> str:
    # stop frames echo a user action, so they are filed as outgoing
    return OUTGOING if isinstance(message, StopMessage) else INCOMING


@dataclass(slots=True)
class AgentMessage:
    """One archived protocol event as observers and the history store see it."""

    type: str
    content: Optional[str]
    data: Any
    source: Optional[str]
    timestamp: float
    direction: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "content": self.content,
            "data": self.data,
            "source": self.source,
            "timestamp": self.timestamp,
            "direction": self.direction,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AgentMessage":
        return cls(
            type=str(data.get("type") or "unknown"),
            content=data.get("content"),
            data=data.get("data"),
            source=data.get("source"),
            timestamp=float(data.get("timestamp") or 0.0),
            direction=str(data.get("direction") or INCOMING),
        )


def build_agent_message(
    message: ProtocolMessage,
    *,
    direction: Optional[str] = None,
    timestamp: Optional[float] = None,
) -> AgentMessage:
    """Wrap a parsed message into the archived record shape."""

    return AgentMessage(
        type=message.type,
        content=render_content(message),
        data=dict(message.raw),
        source=message_source(message),
        timestamp=float(timestamp) if timestamp is not None else time.time(),
        direction=direction or message_direction(message),
    )


__all__ = [
    "AgentMessage",
    "ChatMessage",
    "CompletionMessage",
    "ErrorMessage",
    "InputRequestMessage",
    "InputResponseMessage",
    "MessageParser",
    "PingMessage",
    "PongMessage",
    "ProtocolMessage",
    "RawMessage",
    "ResultEntry",
    "ResultMessage",
    "StartMessage",
    "StopMessage",
    "SystemMessage",
    "UnknownMessage",
    "build_agent_message",
    "message_direction",
    "message_source",
    "parse_frame",
    "parse_message",
    "raw_message",
    "render_content",
    "COMPLETION_TYPE",
    "ERROR_TYPE",
    "INCOMING",
    "INPUT_REQUEST_TYPE",
    "INPUT_RESPONSE_TYPE",
    "MCP_REGISTER_TYPE",
    "MCP_REQUEST_TYPE",
    "MCP_RESPONSE_TYPE",
    "MESSAGE_TYPE",
    "OUTGOING",
    "PING_TYPE",
    "PONG_TYPE",
    "RAW_TYPE",
    "RESULT_TYPE",
    "START_TYPE",
    "STOP_TYPE",
    "SYSTEM_TYPE",
    "TUNNEL_TYPES",
]
