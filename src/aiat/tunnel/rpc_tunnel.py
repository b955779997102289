"""JSON-RPC 2.0 tool responder carried inside the run socket.

The orchestrator forwards requests from its agents as ``mcp_request``
envelopes. :class:`ProtocolTunnel` answers each one with an
``mcp_response`` envelope; every failure is reported as a JSON-RPC error
object so nothing propagates to the socket loop.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence
from urllib.parse import unquote, urlparse

import aiofiles
from jsonschema import Draft7Validator, SchemaError, ValidationError

from aiat.protocol.jsonrpc import (
    PROTOCOL_VERSION,
    JsonRpcRequest,
    RpcError,
    RpcErrorCode,
    error_response,
    success_response,
)
from aiat.protocol.messages import MCP_REGISTER_TYPE, MCP_RESPONSE_TYPE
from aiat.tunnel.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

SERVER_NAME = "vscode-aiat"
SERVER_VERSION = "1.0.0"
SERVER_INSTRUCTIONS = (
    "AIAT tool server reached through the run tunnel. It exposes file "
    "operations, code search and terminal tools for the local workspace."
)

_LIFECYCLE_METHODS = frozenset({"initialize", "initialized", "notifications/initialized", "ping"})


def _format_validation_error(error: ValidationError) -> str:
    path = ".".join(str(part) for part in error.path)
    if path:
        return f"{path}: {error.message}"
    return error.message


def _tool_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)


class ProtocolTunnel:
    """Answer tunneled JSON-RPC requests against a :class:`ToolRegistry`."""

    def __init__(
        self,
        registry: ToolRegistry,
        workspace_roots: Sequence[str | os.PathLike[str]] = (),
        *,
        validate_arguments: bool = False,
        require_initialize: bool = False,
    ) -> None:
        self.registry = registry
        self.workspace_roots = [Path(root).resolve() for root in workspace_roots]
        self.validate_arguments = bool(validate_arguments)
        self.require_initialize = bool(require_initialize)
        self._initialized = False
        self._client_info: Dict[str, Any] = {}

    @property
    def initialized(self) -> bool:
        return self._initialized

    def reset(self) -> None:
        """Forget the handshake; called when the socket goes away."""

        self._initialized = False
        self._client_info = {}

    # ------------------------------------------------------------------
    def registration_frame(self) -> Dict[str, Any]:
        names = list(self.registry.names())
        return {
            "type": MCP_REGISTER_TYPE,
            "serverInfo": {
                "name": SERVER_NAME,
                "version": SERVER_VERSION,
                "protocolVersion": PROTOCOL_VERSION,
            },
            "capabilities": {"tools": names, "toolCount": len(names)},
        }

    async def handle_envelope(self, envelope: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """Return the ``mcp_response`` envelope for *envelope*, if one is owed."""

        if "request" not in envelope:
            logger.debug("mcp_request without request body ignored (id=%s)", envelope.get("id"))
            return None
        response = await self.handle_request(envelope.get("request"))
        if response is None:
            return None
        return {"type": MCP_RESPONSE_TYPE, "requestId": envelope.get("id"), "response": response}

    async def handle_request(self, payload: Any) -> Optional[Dict[str, Any]]:
        """Dispatch one JSON-RPC request; ``None`` for notifications."""

        if isinstance(payload, (str, bytes, bytearray)):
            try:
                payload = json.loads(payload)
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                return error_response(None, RpcError(RpcErrorCode.PARSE_ERROR, f"Parse error: {exc}"))

        request_id = payload.get("id") if isinstance(payload, Mapping) else None
        try:
            request = JsonRpcRequest.from_dict(payload)
        except RpcError as exc:
            return error_response(request_id, exc)

        logger.debug("tunnel request: %s (id=%s)", request.method, request.id)
        try:
            result = await self._dispatch(request)
        except RpcError as exc:
            if request.is_notification:
                logger.debug("notification %s failed: %s", request.method, exc.message)
                return None
            return error_response(request.id, exc)
        except Exception as exc:
            logger.debug("tunnel method %s raised", request.method, exc_info=True)
            if request.is_notification:
                return None
            return error_response(
                request.id,
                RpcError(RpcErrorCode.INTERNAL_ERROR, str(exc) or "Internal error"),
            )
        if request.is_notification:
            return None
        return success_response(request.id, result)

    # ------------------------------------------------------------------
    async def _dispatch(self, request: JsonRpcRequest) -> Any:
        method = request.method
        if self.require_initialize and not self._initialized and method not in _LIFECYCLE_METHODS:
            raise RpcError(RpcErrorCode.NOT_INITIALIZED, "Server not initialized")

        if method == "initialize":
            return self._initialize(request.params)
        if method in ("initialized", "notifications/initialized"):
            self._initialized = True
            return {}
        if method == "ping":
            return {}
        if method == "tools/list":
            return {"tools": [definition.to_dict() for definition in self.registry.definitions()]}
        if method == "tools/call":
            return await self._call_tool(request.params)
        if method == "resources/list":
            return {"resources": self._list_resources()}
        if method == "resources/read":
            return await self._read_resource(request.params)
        raise RpcError(RpcErrorCode.METHOD_NOT_FOUND, f"Method not found: {method}")

    def _initialize(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        client_info = params.get("clientInfo")
        if isinstance(client_info, Mapping):
            self._client_info = dict(client_info)
            logger.info(
                "tunnel peer initialized: %s %s",
                client_info.get("name"),
                client_info.get("version"),
            )
        self._initialized = True
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {
                "tools": {"listChanged": True},
                "resources": {"subscribe": False, "listChanged": False},
                "logging": {},
            },
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            "instructions": SERVER_INSTRUCTIONS,
        }

    async def _call_tool(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise RpcError(RpcErrorCode.INVALID_PARAMS, "Invalid params: tool name is required")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, Mapping):
            raise RpcError(RpcErrorCode.INVALID_PARAMS, "Invalid params: arguments must be an object")

        tool = self.registry.get(name)
        if tool is None:
            raise RpcError(RpcErrorCode.TOOL_NOT_FOUND, f"Tool not found: {name}")
        if self.validate_arguments:
            self._validate(name, tool.definition.input_schema, arguments)

        try:
            result = await self.registry.execute(name, arguments)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.info("tool %s failed: %s", name, message)
            return {"content": [{"type": "text", "text": f"Error: {message}"}], "isError": True}
        logger.debug("tool %s succeeded", name)
        return {"content": [{"type": "text", "text": _tool_text(result)}], "isError": False}

    def _validate(self, name: str, schema: Mapping[str, Any], arguments: Mapping[str, Any]) -> None:
        try:
            validator = Draft7Validator(dict(schema))
            validator.validate(dict(arguments))
        except ValidationError as error:
            raise RpcError(
                RpcErrorCode.INVALID_PARAMS,
                f"Invalid params for {name}: {_format_validation_error(error)}",
            ) from error
        except SchemaError as error:
            raise RpcError(
                RpcErrorCode.INTERNAL_ERROR,
                f"Tool {name} declares an invalid input schema: {error.message}",
            ) from error

    # ------------------------------------------------------------------
    def _list_resources(self) -> list[Dict[str, Any]]:
        return [
            {
                "uri": root.as_uri(),
                "name": root.name or str(root),
                "description": f"Workspace: {root.name or root}",
                "mimeType": "inode/directory",
            }
            for root in self.workspace_roots
        ]

    def _resolve_resource(self, uri: str) -> Path:
        parsed = urlparse(uri)
        if parsed.scheme == "file":
            candidates: Iterable[Path] = [Path(unquote(parsed.path))]
        elif parsed.scheme:
            raise RpcError(RpcErrorCode.RESOURCE_NOT_FOUND, f"Resource not found: {uri}")
        elif os.path.isabs(uri):
            candidates = [Path(uri)]
        else:
            candidates = [root / uri for root in self.workspace_roots]

        for candidate in candidates:
            resolved = candidate.resolve()
            for root in self.workspace_roots:
                if resolved == root or root in resolved.parents:
                    return resolved
        raise RpcError(RpcErrorCode.RESOURCE_NOT_FOUND, f"Resource not found: {uri}")

    async def _read_resource(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri:
            raise RpcError(RpcErrorCode.INVALID_PARAMS, "Invalid params: uri is required")
        path = self._resolve_resource(uri)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as handle:
                text = await handle.read()
        except OSError as exc:
            raise RpcError(RpcErrorCode.RESOURCE_NOT_FOUND, f"Resource not found: {uri}") from exc
        return {"contents": [{"uri": path.as_uri(), "type": "text", "text": text}]}


__all__ = ["ProtocolTunnel", "SERVER_NAME", "SERVER_VERSION"]
