from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import socket
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from aiat.client.config import ClientConfig
from aiat.client.errors import (
    NETWORK_POLICY,
    ClientError,
    ErrorCategory,
    ErrorSeverity,
    RetryPolicy,
    execute_with_retry,
)
from aiat.client.state_manager import ConnectionState, StateManager, TaskState
from aiat.protocol.messages import (
    MCP_REQUEST_TYPE,
    OUTGOING,
    TUNNEL_TYPES,
    AgentMessage,
    PingMessage,
    PongMessage,
    ProtocolMessage,
    build_agent_message,
    parse_frame,
    parse_message,
)
from aiat.storage.kv_store import JsonFileKeyValueStore, MemoryKeyValueStore
from aiat.storage.message_store import MessageStore
from aiat.tunnel.rpc_tunnel import ProtocolTunnel
from aiat.tunnel.tool_registry import ToolRegistry
from aiat.utils.listeners import Listeners, Unsubscribe


logger = logging.getLogger(__name__)


def _maybe_enable_debug_logger() -> bool:
    flag = (os.getenv("AIAT_CLIENT_DEBUG") or "").lower()
    if flag not in ("1", "true", "yes", "on", "dbg", "debug"):
        return False
    has_local = any(getattr(h, "_aiat_local", False) for h in logger.handlers)
    if not has_local:
        handler = logging.StreamHandler()
        fmt = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"
        handler.setFormatter(logging.Formatter(fmt))
        handler.setLevel(logging.DEBUG)
        setattr(handler, "_aiat_local", True)
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return True


_CLIENT_DEBUG = _maybe_enable_debug_logger()

NORMAL_CLOSE = 1000
GOING_AWAY = 1001
ABNORMAL_CLOSE = 1006
INTERNAL_ERROR_CLOSE = 1011

RECONNECT_EXHAUSTED_ERROR = "connection lost, maximum reconnect attempts reached"

_PROJECT_MARKERS = (
    ".git",
    "README.md",
    "README",
    "package.json",
    "pyproject.toml",
    "requirements.txt",
    "setup.py",
    "Cargo.toml",
    "pom.xml",
    "build.gradle",
    "Makefile",
    "CMakeLists.txt",
)


class HeartbeatTimeoutError(RuntimeError):
    """Raised when the peer stops acknowledging liveness probes."""


class ConnectionAbortedByClient(ClientError):
    """A connection attempt outlived an explicit disconnect."""


@dataclass(frozen=True)
class HistoryLoaded:
    run_id: str
    messages: List[AgentMessage]


def generate_run_id() -> str:
    return str(random.randint(1, 2**31))


def local_ipv4() -> str:
    """Best-effort first non-loopback IPv4 address of this host."""

    try:
        for info in socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET):
            address = info[4][0]
            if not address.startswith("127."):
                return address
    except OSError:
        logger.debug("hostname lookup failed", exc_info=True)
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            # no packet is sent; this only selects the outbound interface
            probe.connect(("10.255.255.255", 1))
            address = probe.getsockname()[0]
            if address and not address.startswith("127."):
                return address
    except OSError:
        logger.debug("interface probe failed", exc_info=True)
    return "127.0.0.1"


def _transport_closed(ws: Any) -> bool:
    closed = getattr(ws, "closed", None)
    if isinstance(closed, bool):
        return closed
    state = getattr(ws, "state", None)
    return getattr(state, "name", None) in ("CLOSING", "CLOSED")


def _redact(url: str) -> str:
    head, sep, _ = url.partition("?token=")
    return f"{head}{sep}***" if sep else url


ConnectFactory = Callable[..., Awaitable[Any]]
HttpClientFactory = Callable[[], httpx.AsyncClient]


class AgentClient:
    """Owns the run socket to the orchestrator.

    The client keeps the connection healthy (heartbeat, health check and
    backoff reconnect), feeds inbound frames to the :class:`StateManager`,
    answers tunneled tool requests and archives every protocol event in the
    :class:`MessageStore`. Host callbacks registered through the ``on_*``
    methods are isolated: a failing callback is logged and skipped.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        registry: Optional[ToolRegistry] = None,
        state_manager: Optional[StateManager] = None,
        message_store: Optional[MessageStore] = None,
        tunnel: Optional[ProtocolTunnel] = None,
        connect: Optional[ConnectFactory] = None,
        http_client_factory: Optional[HttpClientFactory] = None,
        connect_policy: RetryPolicy = NETWORK_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        run_id_factory: Callable[[], str] = generate_run_id,
    ) -> None:
        self.config = config or ClientConfig()
        self.registry = registry or ToolRegistry()
        self._state = state_manager or StateManager(stop_timeout_s=self.config.stop_timeout_s)
        self._store = message_store or MessageStore(
            JsonFileKeyValueStore(self.config.history_path)
            if self.config.history_path
            else MemoryKeyValueStore(),
            max_messages_per_run=self.config.history_max_messages,
            max_runs=self.config.history_max_runs,
            max_age_s=self.config.history_max_age_days * 24 * 3600,
        )
        self._tunnel = tunnel or ProtocolTunnel(
            self.registry,
            self.config.workspace_roots,
            validate_arguments=self.config.validate_tool_args,
            require_initialize=self.config.require_initialize,
        )
        self._connect = connect or websockets.connect
        self._http_client_factory = http_client_factory or (
            lambda: httpx.AsyncClient(timeout=self.config.connect_timeout_s)
        )
        self._connect_policy = connect_policy
        self._sleep = sleep
        self._clock = clock
        self._run_id_factory = run_id_factory

        self._ws: Any = None
        self._messages: List[AgentMessage] = []
        self._closing = False
        self._disposed = False
        self._last_ack = 0.0
        self._reconnect_attempts = 0
        self.last_reconnect_delay: Optional[float] = None

        self._receive_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._health_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._archive_tasks: Set[asyncio.Task[None]] = set()
        self._background_tasks: Set[asyncio.Task[None]] = set()

        self._connection_listeners: Listeners[ConnectionState] = Listeners("on_state_change", isolate=True)
        self._task_listeners: Listeners[TaskState] = Listeners("on_task_state_change", isolate=True)
        self._message_listeners: Listeners[AgentMessage] = Listeners("on_message", isolate=True)
        self._error_listeners: Listeners[ClientError] = Listeners("on_error", isolate=True)
        self._history_listeners: Listeners[HistoryLoaded] = Listeners("on_history_loaded", isolate=True)
        self._unsubscribe_state = (
            self._state.on_connection_change(self._connection_listeners.emit),
            self._state.on_task_change(self._task_listeners.emit),
        )

    # ------------------------------------------------------------------
    @property
    def state_manager(self) -> StateManager:
        return self._state

    @property
    def message_store(self) -> MessageStore:
        return self._store

    @property
    def tunnel(self) -> ProtocolTunnel:
        return self._tunnel

    @property
    def current_run_id(self) -> str:
        return self._state.run_id or ""

    @property
    def state(self) -> ConnectionState:
        return self._state.connection_state

    @property
    def task_state(self) -> TaskState:
        return self._state.task_state

    @property
    def messages(self) -> List[AgentMessage]:
        return list(self._messages)

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def on_state_change(self, callback: Callable[[ConnectionState], None]) -> Unsubscribe:
        return self._connection_listeners.connect(callback)

    def on_task_state_change(self, callback: Callable[[TaskState], None]) -> Unsubscribe:
        return self._task_listeners.connect(callback)

    def on_message(self, callback: Callable[[AgentMessage], None]) -> Unsubscribe:
        return self._message_listeners.connect(callback)

    def on_error(self, callback: Callable[[ClientError], None]) -> Unsubscribe:
        return self._error_listeners.connect(callback)

    def on_history_loaded(self, callback: Callable[[HistoryLoaded], None]) -> Unsubscribe:
        return self._history_listeners.connect(callback)

    def state_summary(self) -> Dict[str, Any]:
        summary = self._state.state_summary()
        summary.update(
            {
                "server_url": self.config.server_url,
                "reconnect_attempts": self._reconnect_attempts,
                "reconnect_pending": self.reconnect_pending,
                "messages": len(self._messages),
                "tools": len(self.registry),
            }
        )
        return summary

    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Open the run socket, retrying under the connection policy."""

        if self._disposed:
            raise ClientError("client disposed", ErrorCategory.CONFIGURATION)
        state = self._state.connection_state
        if state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            logger.info("connect ignored: already %s", state.value)
            return
        self._closing = False
        await self._connect_with_retry()

    def _check_not_closing(self) -> None:
        if self._closing or self._disposed:
            raise ConnectionAbortedByClient(
                "connection attempt abandoned after disconnect",
                ErrorCategory.CONNECTION,
                ErrorSeverity.LOW,
                retryable=False,
            )

    async def _connect_with_retry(self) -> None:
        async def _attempt() -> None:
            self._check_not_closing()
            run_id = self._run_id_factory()
            self._state.set_run_id(run_id)
            self._state.update_connection_state(ConnectionState.CONNECTING)
            url = self.config.run_url(run_id)
            try:
                created = await self._prepare_run(int(run_id))
                self._check_not_closing()
                if not created:
                    logger.info("run %s may already exist; connecting anyway", run_id)
                logger.info("connecting to %s", _redact(url))
                await self._open(url)
            except (asyncio.CancelledError, ConnectionAbortedByClient):
                raise
            except Exception as exc:
                message = str(exc) or exc.__class__.__name__
                logger.info("connect attempt for run %s failed: %s", run_id, message)
                self._state.update_connection_state(ConnectionState.ERROR, message)
                if isinstance(exc, ClientError):
                    raise
                raise ClientError.wrap(
                    exc,
                    ErrorCategory.CONNECTION,
                    ErrorSeverity.HIGH,
                    retryable=True,
                    context={"url": _redact(url), "run_id": run_id},
                ) from exc

        try:
            await execute_with_retry(
                _attempt,
                ErrorCategory.CONNECTION,
                self._connect_policy,
                context={"action": "connect"},
                sleep=self._sleep,
            )
        except ConnectionAbortedByClient:
            logger.info("connection attempt abandoned: client is closing")
        except ClientError as err:
            self._emit_error(err)
            raise

    async def _prepare_run(self, run_id: int) -> bool:
        url = f"{self.config.http_url}/debug/create-test-run"
        try:
            async with self._http_client_factory() as client:
                response = await client.post(url, json={"run_id": run_id})
                result = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.info("prepare run %s failed: %s", run_id, exc)
            return False
        logger.info("prepare run %s: %s", run_id, result)
        return isinstance(result, Mapping) and result.get("status") is True

    async def _open(self, url: str) -> None:
        timeout = self.config.connect_timeout_s
        try:
            ws = await asyncio.wait_for(self._connect(url, ping_interval=None), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ClientError(
                f"connection timed out after {timeout:.0f}s",
                ErrorCategory.TIMEOUT,
                ErrorSeverity.HIGH,
                retryable=True,
                context={"url": _redact(url), "timeout_s": timeout},
            ) from exc
        if self._closing or self._disposed:
            logger.info("closing socket opened after disconnect")
            try:
                await ws.close(code=NORMAL_CLOSE, reason="User disconnect")
            except Exception:
                logger.debug("socket close failed", exc_info=True)
            self._check_not_closing()
        self._on_open(ws)
        try:
            await ws.send(json.dumps(self._tunnel.registration_frame()))
        except Exception:
            logger.debug("tunnel registration send failed", exc_info=True)

    def _on_open(self, ws: Any) -> None:
        loop = asyncio.get_running_loop()
        self._ws = ws
        self._reconnect_attempts = 0
        self._last_ack = self._clock()
        self._tunnel.reset()
        logger.info("run socket open (run %s)", self.current_run_id)
        self._state.update_connection_state(ConnectionState.CONNECTED)
        self._state.update_task_state(TaskState.IDLE)
        self._receive_task = loop.create_task(self._receive_loop(ws))
        self._heartbeat_task = loop.create_task(self._heartbeat_loop(ws))
        self._health_task = loop.create_task(self._health_loop(ws))

    # ------------------------------------------------------------------
    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for frame in ws:
                if ws is not self._ws:
                    return
                self._last_ack = self._clock()
                try:
                    await self._handle_frame(frame)
                except Exception:
                    logger.debug("frame dispatch failed", exc_info=True)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed:
            pass
        except Exception as exc:
            logger.info("run socket error: %s", exc)
            self._emit_error(
                ClientError.wrap(exc, ErrorCategory.CONNECTION, ErrorSeverity.HIGH, retryable=True)
            )
        if ws is not self._ws:
            return
        code = getattr(ws, "close_code", None)
        reason = getattr(ws, "close_reason", None) or ""
        self._handle_close(code if code is not None else ABNORMAL_CLOSE, reason)

    async def _handle_frame(self, frame: str | bytes) -> None:
        message = parse_frame(frame)
        if message.type in TUNNEL_TYPES:
            if message.type == MCP_REQUEST_TYPE:
                self._spawn_tunnel_request(dict(message.raw))
            else:
                logger.debug("ignoring tunnel frame %s", message.type)
            return
        if isinstance(message, PingMessage):
            await self._send_raw({"type": "pong"})
            return
        if isinstance(message, PongMessage):
            return
        self._handle_message(message)

    def _handle_message(self, message: ProtocolMessage) -> None:
        self._state.infer_state_from_message(message.raw)
        self._record(build_agent_message(message))

    def _spawn_tunnel_request(self, envelope: Dict[str, Any]) -> None:
        async def _serve() -> None:
            response = await self._tunnel.handle_envelope(envelope)
            if response is not None:
                await self._send_raw(response)

        task = asyncio.get_running_loop().create_task(_serve())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _record(self, record: AgentMessage) -> None:
        self._messages.append(record)
        self._message_listeners.emit(record)
        run_id = self._state.run_id
        if not run_id:
            return
        task = asyncio.get_running_loop().create_task(self._store.save_message(run_id, record))
        self._archive_tasks.add(task)
        task.add_done_callback(self._archive_tasks.discard)

    def _emit_error(self, error: ClientError) -> None:
        logger.info("client error [%s/%s]: %s", error.category.value, error.severity.value, error.message)
        self._error_listeners.emit(error)

    # ------------------------------------------------------------------
    async def _heartbeat_loop(self, ws: Any) -> None:
        interval = self.config.heartbeat_interval_s
        while ws is self._ws:
            await asyncio.sleep(interval)
            if ws is not self._ws or not self._state.is_connected:
                return
            try:
                waiter = await ws.ping()
                await asyncio.wait_for(waiter, timeout=interval)
            except asyncio.TimeoutError:
                logger.debug("ping not acknowledged within %.0fs", interval)
                continue
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.debug("heartbeat ping failed; stopping heartbeat", exc_info=True)
                return
            self._last_ack = self._clock()

    async def _health_loop(self, ws: Any) -> None:
        while ws is self._ws:
            await asyncio.sleep(self.config.health_check_interval_s)
            if not self.check_health():
                return

    def check_health(self) -> bool:
        """Return False (and start recovery) when the socket looks dead."""

        ws = self._ws
        if ws is None or not self._state.is_connected:
            return False
        idle = self._clock() - self._last_ack
        if _transport_closed(ws):
            reason = "transport closed"
        elif idle > self.config.liveness_timeout_s:
            reason = f"no liveness ack for {idle:.0f}s"
        else:
            return True
        logger.warning("connection health check failed (%s); reconnecting", reason)
        self._connection_lost(ws, HeartbeatTimeoutError(reason))
        return False

    def _connection_lost(self, ws: Any, exc: Exception) -> None:
        self._ws = None

        async def _abort() -> None:
            try:
                await ws.close(code=INTERNAL_ERROR_CLOSE, reason="health check failed")
            except Exception:
                logger.debug("abort of stale socket failed", exc_info=True)

        task = asyncio.get_running_loop().create_task(_abort())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        self._handle_close(ABNORMAL_CLOSE, str(exc))

    def _handle_close(self, code: int, reason: str) -> None:
        logger.info("run socket closed: %s %s", code, reason)
        self._ws = None
        self._stop_timers()
        self._tunnel.reset()
        self._state.update_connection_state(ConnectionState.CLOSED)
        self._state.update_task_state(TaskState.IDLE)
        if code == NORMAL_CLOSE:
            return
        self._emit_error(
            ClientError(
                f"connection closed unexpectedly: {code} {reason}".rstrip(),
                ErrorCategory.CONNECTION,
                ErrorSeverity.MEDIUM,
                retryable=code != GOING_AWAY,
                context={"code": code, "reason": reason},
            )
        )
        if not self._closing:
            self._schedule_reconnect()

    def _stop_timers(self) -> None:
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._health_task, self._receive_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._heartbeat_task = None
        self._health_task = None
        self._receive_task = None

    def _schedule_reconnect(self) -> None:
        if self._closing or self._disposed or self.reconnect_pending:
            return
        self._reconnect_attempts += 1
        max_attempts = self.config.max_reconnect_attempts
        if self._reconnect_attempts > max_attempts:
            logger.warning("giving up after %d reconnect attempts", max_attempts)
            self._state.update_connection_state(ConnectionState.ERROR, RECONNECT_EXHAUSTED_ERROR)
            return
        delay = min(
            self.config.reconnect_base_delay_s * (2 ** (self._reconnect_attempts - 1)),
            self.config.reconnect_max_delay_s,
        )
        self.last_reconnect_delay = delay
        logger.info("reconnecting in %.1fs (%d/%d)", delay, self._reconnect_attempts, max_attempts)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        # the handle stays set until the attempt finishes so disconnect() can cancel it
        current = asyncio.current_task()
        try:
            await self._sleep(delay)
            if self._closing or self._disposed:
                return
            try:
                await self._connect_with_retry()
            except ClientError as err:
                logger.info("reconnect failed: %s", err.message)
                if self._reconnect_task is current:
                    self._reconnect_task = None
                self._schedule_reconnect()
        finally:
            if self._reconnect_task is current:
                self._reconnect_task = None

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    async def disconnect(self) -> None:
        """Close normally; never reconnects."""

        self._closing = True
        self._cancel_reconnect()
        ws, self._ws = self._ws, None
        self._stop_timers()
        self._tunnel.reset()
        if ws is not None:
            logger.info("disconnecting run %s", self.current_run_id)
            try:
                await ws.close(code=NORMAL_CLOSE, reason="User disconnect")
            except Exception:
                logger.debug("socket close failed", exc_info=True)
        self._state.update_connection_state(ConnectionState.CLOSED)
        self._state.update_task_state(TaskState.IDLE)
        self._state.reset()

    async def dispose(self) -> None:
        if self._disposed:
            return
        await self.disconnect()
        self._disposed = True
        pending = list(self._archive_tasks) + list(self._background_tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for unsubscribe in self._unsubscribe_state:
            unsubscribe()
        self._state.dispose()
        for listeners in (
            self._connection_listeners,
            self._task_listeners,
            self._message_listeners,
            self._error_listeners,
            self._history_listeners,
        ):
            listeners.clear()
        logger.info("client disposed")

    async def flush(self) -> None:
        """Wait for queued archive writes."""

        while self._archive_tasks:
            await asyncio.gather(*list(self._archive_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    async def _send_raw(self, payload: Mapping[str, Any]) -> bool:
        ws = self._ws
        if ws is None:
            logger.debug("drop %s: socket not open", payload.get("type"))
            return False
        try:
            await ws.send(json.dumps(payload, ensure_ascii=False))
        except Exception:
            logger.debug("send of %s failed", payload.get("type"), exc_info=True)
            return False
        return True

    async def send_message(self, payload: Mapping[str, Any]) -> bool:
        """Transmit *payload* and archive it as an outgoing message."""

        if not self._state.is_connected or self._ws is None:
            logger.info("not connected; %s not sent", payload.get("type"))
            return False
        try:
            text = json.dumps(payload, ensure_ascii=False)
            await self._ws.send(text)
        except Exception as exc:
            logger.info("send of %s failed: %s", payload.get("type"), exc)
            return False
        logger.debug("sent %s", text)
        self._record(build_agent_message(parse_message(payload), direction=OUTGOING))
        return True

    async def _send_with_retry(self, payload: Mapping[str, Any], category: ErrorCategory) -> bool:
        message_type = payload.get("type")

        async def _send() -> bool:
            if not await self.send_message(payload):
                raise ClientError(f"failed to send {message_type} message", category, retryable=True)
            return True

        try:
            return await execute_with_retry(
                _send, category, context={"message_type": message_type}, sleep=self._sleep
            )
        except ClientError as err:
            self._emit_error(err)
            return False

    def team_config(self, agent_id: int | str) -> Dict[str, Any]:
        config: Dict[str, Any] = {
            "id": agent_id,
            "codebase": self.config.workspace_root or "",
            "flow_id": None,
            "node_id": [],
            "mcp_server": local_ipv4(),
            "mcp_port": self.config.tool_port,
        }
        if self.config.auth_token:
            config["mcp_token"] = self.config.auth_token
        return config

    def _validate_workspace(self, root: Optional[str]) -> Optional[str]:
        """Return an error text when *root* cannot serve as the codebase."""

        if not root:
            return "no workspace root configured"
        if not os.path.isdir(root):
            return f"workspace root is not a directory: {root}"
        if not os.access(root, os.R_OK):
            return f"workspace root is not readable: {root}"
        try:
            entries = set(os.listdir(root))
        except OSError:
            entries = set()
        if not entries.intersection(_PROJECT_MARKERS):
            logger.debug("workspace %s has no recognizable project files", root)
        return None

    async def start_task(self, agent_id: int | str, task: str) -> bool:
        if not self._state.can_start_task:
            self._emit_error(
                ClientError(
                    "cannot start task: connection or task state does not allow it",
                    ErrorCategory.TASK_START,
                    context={
                        "agent_id": agent_id,
                        "connection": self._state.connection_state.value,
                        "task": self._state.task_state.value,
                    },
                )
            )
            return False

        self._state.update_task_state(TaskState.STARTING)
        problem = self._validate_workspace(self.config.workspace_root)
        if problem is not None:
            self._emit_error(
                ClientError(
                    f"cannot start task: {problem}",
                    ErrorCategory.TASK_START,
                    ErrorSeverity.HIGH,
                    context={"workspace": self.config.workspace_root},
                )
            )
            self._state.update_task_state(TaskState.IDLE, problem)
            return False

        payload = {
            "type": "start",
            "task": task,
            "files": [],
            "team_config": self.team_config(agent_id),
        }
        if not await self._send_with_retry(payload, ErrorCategory.TASK_START):
            self._state.update_task_state(TaskState.IDLE, "failed to send start message")
            return False
        return True

    async def stop_task(self, reason: str = "User requested stop") -> bool:
        if not self._state.can_stop_task:
            self._emit_error(
                ClientError(
                    "cannot stop task: no task is running",
                    ErrorCategory.TASK_STOP,
                    ErrorSeverity.LOW,
                    context={"task": self._state.task_state.value},
                )
            )
            return False

        self._state.update_task_state(TaskState.STOPPING)
        payload = {"type": "stop", "reason": reason}
        if not await self._send_with_retry(payload, ErrorCategory.TASK_STOP):
            self._state.update_task_state(TaskState.RUNNING, "failed to send stop message")
            return False
        return True

    async def send_input_response(self, response: str) -> bool:
        return await self.send_message({"type": "input_response", "response": response})

    async def ping(self) -> bool:
        return await self.send_message({"type": "ping"})

    # ------------------------------------------------------------------
    def clear_messages(self) -> None:
        self._messages = []

    async def load_history_for_run(self, run_id: str) -> List[AgentMessage]:
        if not run_id:
            return []
        messages = await self._store.get_messages_for_run(run_id)
        self._messages = list(messages)
        logger.info("loaded %d messages for run %s", len(messages), run_id)
        self._history_listeners.emit(HistoryLoaded(run_id=run_id, messages=list(messages)))
        return messages

    async def set_run_title(self, title: str) -> None:
        await self._store.set_run_title(self.current_run_id, title)


__all__ = [
    "AgentClient",
    "ConnectionAbortedByClient",
    "HeartbeatTimeoutError",
    "HistoryLoaded",
    "RECONNECT_EXHAUSTED_ERROR",
    "generate_run_id",
    "local_ipv4",
]
