from __future__ import annotations

import asyncio
import dataclasses
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Union

import httpx
import pytest

from aiat.client.agent_client import RECONNECT_EXHAUSTED_ERROR, AgentClient, HistoryLoaded
from aiat.client.config import ClientConfig
from aiat.client.errors import ClientError, ErrorCategory, RetryPolicy
from aiat.client.state_manager import ConnectionState, TaskState
from aiat.protocol.messages import AgentMessage


class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.close_code: Optional[int] = None
        self.close_reason = ""
        self.closed = False
        self.fail_sends = False
        self.pings = 0
        self._incoming: asyncio.Queue[Optional[str]] = asyncio.Queue()

    def feed(self, payload: Union[str, Dict[str, Any]]) -> None:
        self._incoming.put_nowait(payload if isinstance(payload, str) else json.dumps(payload))

    def drop(self, code: int = 1006, reason: str = "") -> None:
        self.close_code = code
        self.close_reason = reason
        self.closed = True
        self._incoming.put_nowait(None)

    async def send(self, text: str) -> None:
        if self.closed or self.fail_sends:
            raise OSError("socket unavailable")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.closed:
            self.drop(code, reason)

    async def ping(self) -> "asyncio.Future[float]":
        self.pings += 1
        waiter: asyncio.Future[float] = asyncio.get_running_loop().create_future()
        waiter.set_result(0.0)
        return waiter

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def sent_types(self) -> List[str]:
        return [frame.get("type") for frame in self.sent]


class FakeConnector:
    def __init__(self, *results: Union[FakeWebSocket, Exception]) -> None:
        self.results = list(results)
        self.urls: List[str] = []
        self.kwargs: List[Dict[str, Any]] = []

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.urls.append(url)
        self.kwargs.append(kwargs)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class GatedConnector(FakeConnector):
    """Holds every call after the first until ``gate`` is set."""

    def __init__(self, *results: Union[FakeWebSocket, Exception], hold_first: bool = False) -> None:
        super().__init__(*results)
        self.gate = asyncio.Event()
        self.hold_first = hold_first

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        if self.hold_first or self.urls:
            self.urls.append(url)
            self.kwargs.append(kwargs)
            await self.gate.wait()
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return await super().__call__(url, **kwargs)


class UnansweredPingWebSocket(FakeWebSocket):
    async def ping(self) -> "asyncio.Future[float]":
        self.pings += 1
        return asyncio.get_running_loop().create_future()


class RecordingSleep:
    def __init__(self, *, block: bool = False) -> None:
        self.delays: List[float] = []
        self.block = block

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.block:
            await asyncio.Event().wait()


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


async def settle(predicate: Optional[Callable[[], bool]] = None, rounds: int = 50) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)
        if predicate is not None and predicate():
            return
    if predicate is not None:
        assert predicate(), "condition not reached"


def _run_ids(*ids: str) -> Callable[[], str]:
    source: Iterator[str] = iter(ids)
    return lambda: next(source)


@pytest.fixture()
def config(tmp_path: Path) -> ClientConfig:
    (tmp_path / "pyproject.toml").write_text("[project]\n", encoding="utf-8")
    return ClientConfig(
        server_url="http://orchestrator:32080",
        auth_token="secret",
        workspace_roots=[str(tmp_path)],
        tool_port=9600,
        heartbeat_interval_s=3600.0,
        health_check_interval_s=3600.0,
    )


@pytest.fixture()
def http_requests() -> List[httpx.Request]:
    return []


def _http_factory(requests: List[httpx.Request], status: int = 200, body: Any = None):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if body is None:
            return httpx.Response(status, json={"status": True})
        return httpx.Response(status, text=body)

    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_client(
    config: ClientConfig,
    connector: FakeConnector,
    requests: List[httpx.Request],
    *,
    sleep: Optional[RecordingSleep] = None,
    **kwargs: Any,
) -> AgentClient:
    kwargs.setdefault("run_id_factory", _run_ids("42", "43", "44"))
    kwargs.setdefault("http_client_factory", _http_factory(requests))
    return AgentClient(config, connect=connector, sleep=sleep or RecordingSleep(), **kwargs)


def run(body: Callable[[], Awaitable[None]]) -> None:
    asyncio.run(body())


def test_connect_prepares_run_and_registers_tunnel(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        connector = FakeConnector(ws)
        client = make_client(config, connector, http_requests)
        states: List[ConnectionState] = []
        client.on_state_change(states.append)

        await client.connect()

        assert connector.urls == ["ws://orchestrator:32080/ws/runs/42?token=secret"]
        assert connector.kwargs == [{"ping_interval": None}]
        assert [str(r.url) for r in http_requests] == ["http://orchestrator:32080/debug/create-test-run"]
        assert json.loads(http_requests[0].content) == {"run_id": 42}
        assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        assert client.current_run_id == "42"
        assert ws.sent_types() == ["mcp_register"]

        await client.connect()
        assert len(connector.urls) == 1

        await client.disconnect()
        assert ws.close_code == 1000
        assert client.state is ConnectionState.CLOSED
        assert client.state_manager.run_id is None
        assert not client.reconnect_pending
        await client.dispose()

    run(body)


def test_prepare_run_failure_does_not_block_connect(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(
            config,
            FakeConnector(ws),
            http_requests,
            http_client_factory=_http_factory(http_requests, status=500, body="boom"),
        )
        await client.connect()
        assert client.state is ConnectionState.CONNECTED
        assert len(http_requests) == 1
        await client.dispose()

    run(body)


def test_connect_failure_exhausts_policy(config, http_requests) -> None:
    async def body() -> None:
        connector = FakeConnector(OSError("refused"), OSError("refused"))
        sleep = RecordingSleep()
        client = make_client(
            config,
            connector,
            http_requests,
            sleep=sleep,
            connect_policy=RetryPolicy(max_attempts=2, base_delay=0.25, max_delay=1.0, backoff_factor=2.0),
        )
        errors: List[ClientError] = []
        client.on_error(errors.append)

        with pytest.raises(ClientError) as excinfo:
            await client.connect()

        assert excinfo.value.category is ErrorCategory.CONNECTION
        assert "refused" in excinfo.value.message
        assert sleep.delays == [0.25]
        assert len(connector.urls) == 2
        assert client.state is ConnectionState.ERROR
        assert client.state_manager.last_error == "refused"
        assert errors == [excinfo.value]
        await client.dispose()

    run(body)


def test_result_complete_scenario(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests)
        received: List[AgentMessage] = []
        client.on_message(received.append)
        await client.connect()

        ws.feed({"type": "message", "data": {"name": "coder", "content": "working on it", "source": "flow.coder"}})
        await settle(lambda: client.task_state is TaskState.RUNNING)
        ws.feed({"type": "result", "data": {"status": "complete", "task_result": {"messages": []}}})
        await settle(lambda: client.task_state is TaskState.COMPLETED)

        assert [m.type for m in received] == ["message", "result"]
        assert received[0].content == "[coder] working on it"
        assert received[0].source == "flow.coder"
        assert not client.state_manager.can_stop_task
        assert await client.stop_task() is False

        await client.flush()
        archived = await client.message_store.get_messages_for_run("42")
        assert [m.type for m in archived] == ["message", "result"]
        await client.dispose()

    run(body)


def test_input_request_and_response(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests)
        await client.connect()

        ws.feed({"type": "input_request", "prompt": "Proceed?"})
        await settle(lambda: client.task_state is TaskState.AWAITING_INPUT)
        assert client.messages[-1].content == "input requested: Proceed?"

        assert await client.send_input_response("yes") is True
        assert ws.sent[-1] == {"type": "input_response", "response": "yes"}
        last = client.messages[-1]
        assert last.direction == "outgoing"
        assert last.content == "yes"
        await client.dispose()

    run(body)


def test_peer_ping_answered_and_not_recorded(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests)
        await client.connect()

        ws.feed({"type": "ping"})
        ws.feed({"type": "pong"})
        await settle(lambda: "pong" in ws.sent_types())
        await settle()
        assert client.messages == []

        assert await client.ping() is True
        assert ws.sent[-1] == {"type": "ping"}
        await client.dispose()

    run(body)


def test_non_json_frame_becomes_raw_message(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests)
        await client.connect()

        ws.feed("plain text")
        await settle(lambda: bool(client.messages))
        assert client.messages[0].type == "raw"
        assert client.messages[0].content == "plain text"
        await client.dispose()

    run(body)


def test_tunnel_request_is_answered(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests)
        client.registry.register_function(
            "echo",
            lambda args: args["text"],
            description="Echo text",
            input_schema={"type": "object", "properties": {"text": {"type": "string"}}},
        )
        await client.connect()

        ws.feed(
            {
                "type": "mcp_request",
                "id": "req-1",
                "request": {
                    "jsonrpc": "2.0",
                    "id": 5,
                    "method": "tools/call",
                    "params": {"name": "echo", "arguments": {"text": "hi"}},
                },
            }
        )
        await settle(lambda: "mcp_response" in ws.sent_types())
        response = ws.sent[-1]
        assert response["requestId"] == "req-1"
        assert response["response"]["id"] == 5
        assert response["response"]["result"]["content"][0]["text"] == "hi"
        assert client.messages == []
        await client.dispose()

    run(body)


def test_start_task_sends_team_config(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests)
        await client.connect()

        assert await client.start_task(7, "Fix the login bug") is True
        assert client.task_state is TaskState.STARTING
        start = ws.sent[-1]
        assert start["type"] == "start"
        assert start["task"] == "Fix the login bug"
        assert start["files"] == []
        team = start["team_config"]
        assert team["id"] == 7
        assert team["codebase"] == config.workspace_root
        assert team["flow_id"] is None
        assert team["node_id"] == []
        assert team["mcp_port"] == 9600
        assert team["mcp_token"] == "secret"
        assert isinstance(team["mcp_server"], str)

        await client.flush()
        history = await client.message_store.get_history_list()
        assert history[0].title == "the login bug"
        await client.dispose()

    run(body)


def test_start_task_rejected_when_disconnected(config, http_requests) -> None:
    async def body() -> None:
        client = make_client(config, FakeConnector(), http_requests)
        errors: List[ClientError] = []
        client.on_error(errors.append)

        assert await client.start_task(1, "anything") is False
        assert errors[0].category is ErrorCategory.TASK_START
        assert client.task_state is TaskState.IDLE
        await client.dispose()

    run(body)


def test_start_task_rejects_missing_workspace(tmp_path: Path, http_requests) -> None:
    async def body() -> None:
        config = ClientConfig(workspace_roots=[str(tmp_path / "missing")], heartbeat_interval_s=3600.0)
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests)
        errors: List[ClientError] = []
        client.on_error(errors.append)
        await client.connect()

        assert await client.start_task(1, "anything") is False
        assert client.task_state is TaskState.IDLE
        assert "not a directory" in errors[0].message
        assert ws.sent_types() == ["mcp_register"]
        await client.dispose()

    run(body)


def test_start_send_failure_rolls_back_to_idle(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        sleep = RecordingSleep()
        client = make_client(config, FakeConnector(ws), http_requests, sleep=sleep)
        errors: List[ClientError] = []
        client.on_error(errors.append)
        await client.connect()
        ws.fail_sends = True

        assert await client.start_task(1, "anything") is False
        assert client.task_state is TaskState.IDLE
        assert client.state_manager.last_error == "failed to send start message"
        assert sleep.delays == [0.5]
        assert errors[-1].category is ErrorCategory.TASK_START
        await client.dispose()

    run(body)


def test_stop_send_failure_rolls_back_to_running(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests)
        await client.connect()
        ws.feed({"type": "message", "data": {"name": "coder", "content": "busy"}})
        await settle(lambda: client.task_state is TaskState.RUNNING)
        ws.fail_sends = True

        assert await client.stop_task() is False
        assert client.task_state is TaskState.RUNNING
        assert client.state_manager.last_error == "failed to send stop message"
        assert not client.state_manager.stop_watchdog_armed
        await client.dispose()

    run(body)


def test_stop_task_sends_reason(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests)
        await client.connect()
        ws.feed({"type": "message", "data": {"name": "coder", "content": "busy"}})
        await settle(lambda: client.task_state is TaskState.RUNNING)

        assert await client.stop_task("enough") is True
        assert ws.sent[-1] == {"type": "stop", "reason": "enough"}
        assert client.task_state is TaskState.STOPPING
        assert client.messages[-1].direction == "outgoing"
        assert client.messages[-1].content == "enough"
        await client.dispose()

    run(body)


def test_unexpected_close_schedules_reconnect(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        sleep = RecordingSleep(block=True)
        client = make_client(config, FakeConnector(ws), http_requests, sleep=sleep)
        errors: List[ClientError] = []
        client.on_error(errors.append)
        await client.connect()
        ws.feed({"type": "message", "data": {"name": "coder", "content": "busy"}})
        await settle(lambda: client.task_state is TaskState.RUNNING)

        ws.drop(1006)
        await settle(lambda: client.reconnect_pending and bool(sleep.delays))

        assert client.task_state is TaskState.IDLE
        assert client.state is ConnectionState.CLOSED
        assert sleep.delays == [config.reconnect_base_delay_s]
        assert client.last_reconnect_delay == config.reconnect_base_delay_s
        assert errors[-1].category is ErrorCategory.CONNECTION
        assert errors[-1].retryable is True

        await client.dispose()
        assert not client.reconnect_pending

    run(body)


def test_reconnect_opens_a_new_run(config, http_requests) -> None:
    async def body() -> None:
        first, second = FakeWebSocket(), FakeWebSocket()
        connector = FakeConnector(first, second)
        client = make_client(config, connector, http_requests)
        await client.connect()

        first.drop(1006, "abnormal")
        await settle(lambda: client.state is ConnectionState.CONNECTED and len(connector.urls) == 2)

        assert connector.urls[1].endswith("/ws/runs/43?token=secret")
        assert client.current_run_id == "43"
        assert second.sent_types() == ["mcp_register"]
        assert client.state_summary()["reconnect_attempts"] == 0
        await client.dispose()

    run(body)


def test_normal_close_does_not_reconnect(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests)
        errors: List[ClientError] = []
        client.on_error(errors.append)
        await client.connect()

        ws.drop(1000)
        await settle(lambda: client.state is ConnectionState.CLOSED)
        await settle()
        assert not client.reconnect_pending
        assert errors == []
        await client.dispose()

    run(body)


def test_going_away_close_is_not_retryable(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests, sleep=RecordingSleep(block=True))
        errors: List[ClientError] = []
        client.on_error(errors.append)
        await client.connect()

        ws.drop(1001, "server restart")
        await settle(lambda: bool(errors))
        assert errors[0].retryable is False
        assert "1001 server restart" in errors[0].message
        await client.dispose()

    run(body)


def test_reconnect_gives_up_after_max_attempts(tmp_path: Path, http_requests) -> None:
    async def body() -> None:
        config = ClientConfig(workspace_roots=[str(tmp_path)], max_reconnect_attempts=0, heartbeat_interval_s=3600.0)
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests)
        await client.connect()

        ws.drop(1006)
        await settle(lambda: client.state is ConnectionState.ERROR)
        assert client.state_manager.last_error == RECONNECT_EXHAUSTED_ERROR
        assert not client.reconnect_pending
        await client.dispose()

    run(body)


def test_health_check_detects_stale_connection(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        clock = FakeClock()
        client = make_client(
            config, FakeConnector(ws), http_requests, sleep=RecordingSleep(block=True), clock=clock
        )
        await client.connect()
        assert client.check_health() is True

        clock.now += config.liveness_timeout_s + 1
        assert client.check_health() is False
        assert client.state is ConnectionState.CLOSED
        assert client.reconnect_pending
        await settle(lambda: ws.close_code == 1011)
        await client.dispose()

    run(body)


def test_health_check_detects_closed_transport(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests, sleep=RecordingSleep(block=True))
        await client.connect()

        ws.closed = True
        assert client.check_health() is False
        assert client.state is ConnectionState.CLOSED
        await client.dispose()

    run(body)


def test_history_load_and_title(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests)
        loaded: List[HistoryLoaded] = []
        client.on_history_loaded(loaded.append)
        await client.connect()
        ws.feed({"type": "message", "data": {"name": "coder", "content": "one"}})
        ws.feed({"type": "error", "error": "boom"})
        await settle(lambda: len(client.messages) == 2)
        await client.flush()

        client.clear_messages()
        assert client.messages == []

        restored = await client.load_history_for_run("42")
        assert [m.content for m in restored] == ["[coder] one", "error: boom"]
        assert [m.content for m in client.messages] == ["[coder] one", "error: boom"]
        assert loaded[0].run_id == "42"
        assert len(loaded[0].messages) == 2

        await client.set_run_title("Renamed")
        history = await client.message_store.get_history_list()
        assert history[0].title == "Renamed"
        await client.dispose()

    run(body)


def test_failing_observer_does_not_break_delivery(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        client = make_client(config, FakeConnector(ws), http_requests)
        received: List[AgentMessage] = []

        def broken(_: AgentMessage) -> None:
            raise RuntimeError("observer bug")

        client.on_message(broken)
        client.on_message(received.append)
        await client.connect()

        ws.feed({"type": "system", "status": "connected"})
        ws.feed({"type": "message", "data": {"name": "coder", "content": "still here"}})
        await settle(lambda: len(received) == 2)
        assert received[0].content == "system status: connected"
        await client.dispose()

    run(body)


def test_disconnect_during_reconnect_stays_closed(config, http_requests) -> None:
    async def body() -> None:
        first, second = FakeWebSocket(), FakeWebSocket()
        connector = GatedConnector(first, second)
        client = make_client(config, connector, http_requests)
        await client.connect()

        first.drop(1006)
        await settle(lambda: len(connector.urls) == 2, rounds=200)
        assert client.state is ConnectionState.CONNECTING
        assert client.reconnect_pending

        await client.disconnect()
        connector.gate.set()
        await settle()

        assert client.state is ConnectionState.CLOSED
        assert not client.reconnect_pending
        assert client.state_manager.run_id is None
        assert second.sent == []
        assert len(connector.urls) == 2
        await client.dispose()

    run(body)


def test_socket_opened_after_disconnect_is_closed(config, http_requests) -> None:
    async def body() -> None:
        ws = FakeWebSocket()
        connector = GatedConnector(ws, hold_first=True)
        client = make_client(config, connector, http_requests)
        errors: List[ClientError] = []
        client.on_error(errors.append)
        pending = asyncio.get_running_loop().create_task(client.connect())
        await settle(lambda: len(connector.urls) == 1, rounds=200)

        await client.disconnect()
        connector.gate.set()
        await pending

        assert ws.close_code == 1000
        assert ws.sent == []
        assert client.state is ConnectionState.CLOSED
        assert client.state_manager.run_id is None
        assert client.check_health() is False
        assert not client.reconnect_pending
        assert errors == []
        await client.dispose()

    run(body)


def test_heartbeat_ack_refreshes_liveness(config, http_requests) -> None:
    async def body() -> None:
        fast = dataclasses.replace(config, heartbeat_interval_s=0.01, liveness_timeout_s=0.05)
        ws = FakeWebSocket()
        clock = FakeClock()
        client = make_client(fast, FakeConnector(ws), http_requests, clock=clock)
        await client.connect()

        clock.now += fast.liveness_timeout_s + 1
        await asyncio.sleep(0.1)

        assert ws.pings >= 1
        assert client.check_health() is True
        assert client.state is ConnectionState.CONNECTED
        await client.dispose()

    run(body)


def test_unanswered_heartbeat_fails_health_check(config, http_requests) -> None:
    async def body() -> None:
        fast = dataclasses.replace(config, heartbeat_interval_s=0.01, liveness_timeout_s=0.05)
        ws = UnansweredPingWebSocket()
        clock = FakeClock()
        client = make_client(
            fast, FakeConnector(ws), http_requests, sleep=RecordingSleep(block=True), clock=clock
        )
        await client.connect()

        clock.now += fast.liveness_timeout_s + 1
        await asyncio.sleep(0.1)

        assert ws.pings >= 1
        assert client.check_health() is False
        assert client.state is ConnectionState.CLOSED
        assert client.reconnect_pending
        await client.dispose()

    run(body)
