from __future__ import annotations

import json

import pytest

from aiat.protocol.messages import (
    INCOMING,
    OUTGOING,
    AgentMessage,
    ChatMessage,
    CompletionMessage,
    PongMessage,
    RawMessage,
    ResultMessage,
    StopMessage,
    UnknownMessage,
    build_agent_message,
    parse_frame,
    parse_message,
    render_content,
)


@pytest.fixture()
def result_payload() -> dict[str, object]:
    return {
        "type": "result",
        "data": {
            "status": "complete",
            "task_result": {
                "messages": [
                    {"name": "planner", "content": "plan ready"},
                    {"content": "done"},
                ],
                "stop_reason": "finished",
            },
        },
    }


def test_chat_message_renders_with_name() -> None:
    message = parse_message(
        {"type": "message", "data": {"name": "coder", "content": "hello", "source": "team.coder"}}
    )
    assert isinstance(message, ChatMessage)
    assert render_content(message) == "[coder] hello"
    record = build_agent_message(message, timestamp=12.5)
    assert record.source == "team.coder"
    assert record.direction == INCOMING
    assert record.timestamp == 12.5


def test_chat_message_without_name_falls_back_to_json() -> None:
    message = parse_message({"type": "message", "data": {}})
    assert json.loads(render_content(message)) == {"type": "message", "data": {}}


def test_result_entries_joined(result_payload: dict[str, object]) -> None:
    message = parse_message(result_payload)
    assert isinstance(message, ResultMessage)
    assert message.is_complete
    assert message.stop_reason == "finished"
    assert render_content(message) == "[planner] plan ready\n\ndone"


def test_result_without_entries_shows_status() -> None:
    message = parse_message({"type": "result", "status": "failed"})
    text = render_content(message)
    assert text.startswith("(failed): ")


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"type": "completion", "status": "cancelled"}, "task cancelled"),
        ({"type": "completion", "data": {"status": "completed"}}, "task completed"),
        ({"type": "completion", "data": {"status": "complete"}}, "task completed"),
        (
            {"type": "completion", "data": {"status": "timeout", "stop_reason": "budget"}},
            "task finished (timeout): budget",
        ),
    ],
)
def test_completion_content(payload: dict[str, object], expected: str) -> None:
    message = parse_message(payload)
    assert isinstance(message, CompletionMessage)
    assert render_content(message) == expected


def test_stop_message_is_outgoing() -> None:
    message = parse_message({"type": "stop"})
    assert isinstance(message, StopMessage)
    record = build_agent_message(message)
    assert record.direction == OUTGOING
    assert record.content == "stop requested by user"


def test_start_message_source_uses_team_id() -> None:
    message = parse_message({"type": "start", "task": "fix bug", "team_config": {"id": "7"}})
    record = build_agent_message(message)
    assert record.source == "team_7"
    assert record.content == "fix bug"


def test_non_json_frame_becomes_raw() -> None:
    message = parse_frame("not json at all")
    assert isinstance(message, RawMessage)
    assert message.raw == {"type": "raw", "content": "not json at all"}
    assert render_content(message) == "not json at all"


def test_unknown_type_is_kept_verbatim() -> None:
    message = parse_frame(json.dumps({"type": "telemetry", "value": 3}))
    assert isinstance(message, UnknownMessage)
    assert message.type == "telemetry"
    assert json.loads(render_content(message)) == {"type": "telemetry", "value": 3}


def test_pong_has_no_content() -> None:
    message = parse_frame(b'{"type": "pong"}')
    assert isinstance(message, PongMessage)
    assert render_content(message) is None


def test_error_and_input_request_content() -> None:
    assert render_content(parse_message({"type": "error", "error": "boom"})) == "error: boom"
    assert (
        render_content(parse_message({"type": "input_request", "prompt": "name?"}))
        == "input requested: name?"
    )


def test_agent_message_dict_round_trip() -> None:
    record = AgentMessage(
        type="message",
        content="hi",
        data={"type": "message"},
        source=None,
        timestamp=1.0,
        direction=INCOMING,
    )
    assert AgentMessage.from_dict(record.to_dict()) == record


def test_parse_message_rejects_non_mapping() -> None:
    with pytest.raises(ValueError):
        parse_message(["type", "system"])  # type: ignore[arg-type]
