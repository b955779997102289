"""
Command-line host for the agent client.

Connects to an orchestrator run, optionally starts a task, prints every
protocol message as it is archived and answers input requests from stdin.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Callable, List, Optional, Sequence, TextIO

from aiat.client.agent_client import RECONNECT_EXHAUSTED_ERROR, AgentClient
from aiat.client.config import ClientConfig
from aiat.client.errors import ClientError, describe_error
from aiat.client.state_manager import ConnectionState, TaskState
from aiat.protocol.messages import AgentMessage

logger = logging.getLogger(__name__)

_TERMINAL_TASK_STATES = (TaskState.COMPLETED, TaskState.ERROR)


def format_record(record: AgentMessage) -> Optional[str]:
    if record.content is None:
        return None
    arrow = ">>" if record.direction == "outgoing" else "<<"
    return f"{arrow} [{record.type}] {record.content}"


async def run_client(
    config: ClientConfig,
    *,
    agent_id: Optional[str] = None,
    task: Optional[str] = None,
    client_factory: Callable[[ClientConfig], AgentClient] = AgentClient,
    read_line: Callable[[str], str] = input,
    out: TextIO = sys.stdout,
) -> int:
    """Drive one session; returns a process exit code.

    Without *task* the session watches the run until the connection drops for
    good. With a task it ends once the task completes or fails.
    """

    client = client_factory(config)
    done = asyncio.Event()
    answering: List[asyncio.Task[None]] = []
    exit_code = 0

    def _print(text: str) -> None:
        out.write(text + "\n")
        out.flush()

    def _on_message(record: AgentMessage) -> None:
        line = format_record(record)
        if line is not None:
            _print(line)

    def _on_error(error: ClientError) -> None:
        summary, suggestions = describe_error(error)
        _print(f"!! {summary}")
        for hint in suggestions:
            _print(f"   - {hint}")

    async def _answer(prompt: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            text = await loop.run_in_executor(None, read_line, f"{prompt}> ")
        except EOFError:
            logger.info("stdin closed; leaving input request unanswered")
            return
        await client.send_input_response(text)

    def _on_task(state: TaskState) -> None:
        nonlocal exit_code
        if state == TaskState.AWAITING_INPUT:
            answering.append(asyncio.get_running_loop().create_task(_answer("input")))
        elif task and state in _TERMINAL_TASK_STATES:
            if state == TaskState.ERROR:
                exit_code = 1
            done.set()

    def _on_connection(state: ConnectionState) -> None:
        nonlocal exit_code
        if state == ConnectionState.ERROR and client.state_manager.last_error == RECONNECT_EXHAUSTED_ERROR:
            exit_code = 1
            done.set()

    client.on_message(_on_message)
    client.on_error(_on_error)
    client.on_task_state_change(_on_task)
    client.on_state_change(_on_connection)

    try:
        try:
            await client.connect()
        except ClientError:
            return 1
        logger.info("connected to run %s", client.current_run_id)
        if task:
            if not await client.start_task(agent_id or "default", task):
                return 1
        await done.wait()
        return exit_code
    finally:
        for pending in answering:
            pending.cancel()
        await client.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aiat", description="aiat agent client")
    parser.add_argument(
        "--server",
        default=None,
        help="Orchestrator WebSocket URL (default: $AIAT_SERVER_URL or ws://localhost:32080)",
    )
    parser.add_argument("--token", default=None, help="Bearer token sent with the run socket")
    parser.add_argument(
        "--workspace",
        action="append",
        default=None,
        help="Workspace root exposed to the orchestrator (repeatable; default: cwd)",
    )
    parser.add_argument("--tool-port", type=int, default=None, help="Tool port advertised in team_config")
    parser.add_argument("--history", default=None, help="JSON file used for message history")
    parser.add_argument("--agent", default=None, help="Agent id for the start message")
    parser.add_argument("--task", default=None, help="Task text; omit to only watch the run")
    parser.add_argument(
        "--validate-tool-args",
        action="store_true",
        help="Validate tools/call arguments against the tool input schema",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def config_from_args(args: argparse.Namespace) -> ClientConfig:
    overrides = {
        "server_url": args.server,
        "auth_token": args.token,
        "workspace_roots": args.workspace,
        "tool_port": args.tool_port,
        "history_path": args.history,
    }
    if args.validate_tool_args:
        overrides["validate_tool_args"] = True
    return ClientConfig.from_env(**overrides)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command-line entry point."""
    args = build_parser().parse_args(argv)

    debug = bool(args.debug)
    if (os.getenv("AIAT_DEBUG") or "").lower() in ("1", "true", "yes"):
        debug = True
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="[%(asctime)s] %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = config_from_args(args)
    except ValueError as exc:
        logger.error("invalid configuration: %s", exc)
        return 2
    logger.info("client config: %s", config.as_dict())

    try:
        return asyncio.run(run_client(config, agent_id=args.agent, task=args.task))
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
