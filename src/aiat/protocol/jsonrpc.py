"""JSON-RPC 2.0 shapes used by the tool tunnel."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Mapping, Optional, Union

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"

RequestId = Union[str, int]


class RpcErrorCode(IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    TOOL_NOT_FOUND = -32001
    TOOL_EXECUTION_ERROR = -32002
    RESOURCE_NOT_FOUND = -32003
    NOT_INITIALIZED = -32004


class RpcError(Exception):
    """Failure that is reported to the peer as a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = int(code)
        self.message = message
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload


@dataclass(slots=True)
class JsonRpcRequest:
    method: str
    id: Optional[RequestId] = None
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_notification(self) -> bool:
        return self.id is None

    @classmethod
    def from_dict(cls, data: Any) -> "JsonRpcRequest":
        if not isinstance(data, Mapping):
            raise RpcError(RpcErrorCode.INVALID_REQUEST, "Invalid Request: expected an object")
        if data.get("jsonrpc") != JSONRPC_VERSION:
            raise RpcError(RpcErrorCode.INVALID_REQUEST, "Invalid Request: jsonrpc must be '2.0'")
        method = data.get("method")
        if not isinstance(method, str) or not method:
            raise RpcError(RpcErrorCode.INVALID_REQUEST, "Invalid Request: method must be a string")
        request_id = data.get("id")
        if request_id is not None and (
            isinstance(request_id, bool) or not isinstance(request_id, (str, int))
        ):
            raise RpcError(RpcErrorCode.INVALID_REQUEST, "Invalid Request: id must be a string or integer")
        params = data.get("params")
        if params is None:
            params = {}
        elif not isinstance(params, Mapping):
            raise RpcError(RpcErrorCode.INVALID_PARAMS, "Invalid params: expected an object")
        return cls(method=method, id=request_id, params=dict(params))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.id is not None:
            payload["id"] = self.id
        if self.params:
            payload["params"] = dict(self.params)
        return payload


def success_response(request_id: Optional[RequestId], result: Any) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_response(request_id: Optional[RequestId], error: RpcError) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error.to_dict()}


def is_notification(data: Any) -> bool:
    """Return True when *data* is a well formed request without an ``id``."""

    return isinstance(data, Mapping) and "method" in data and data.get("id") is None


__all__ = [
    "JSONRPC_VERSION",
    "JsonRpcRequest",
    "PROTOCOL_VERSION",
    "RequestId",
    "RpcError",
    "RpcErrorCode",
    "error_response",
    "is_notification",
    "success_response",
]
