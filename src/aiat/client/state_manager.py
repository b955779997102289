"""Connection and task state machine for the orchestrator client."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Deque, Dict, Mapping, Optional, Tuple

from aiat.protocol.messages import (
    ChatMessage,
    CompletionMessage,
    ErrorMessage,
    InputRequestMessage,
    ResultMessage,
    StopMessage,
    SystemMessage,
    parse_message,
)
from aiat.utils.listeners import Listeners, Unsubscribe

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    CLOSED = "closed"


class TaskState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    AWAITING_INPUT = "awaiting_input"
    STOPPING = "stopping"
    COMPLETED = "completed"
    ERROR = "error"


_RUNNING_STATES = frozenset({TaskState.STARTING, TaskState.RUNNING, TaskState.AWAITING_INPUT})
_STARTABLE_STATES = frozenset({TaskState.IDLE, TaskState.COMPLETED, TaskState.ERROR})
_STOP_RESETTABLE = frozenset(
    {TaskState.STOPPING, TaskState.RUNNING, TaskState.STARTING, TaskState.COMPLETED}
)

STOP_TIMEOUT_ERROR = "stop timed out"


@dataclass(frozen=True)
class AppState:
    connection: ConnectionState = ConnectionState.CLOSED
    task: TaskState = TaskState.IDLE
    run_id: Optional[str] = None
    last_error: Optional[str] = None
    last_message: Any = None


# returns a handle with ``cancel()``, e.g. :class:`asyncio.TimerHandle`
Scheduler = Callable[[float, Callable[[], None]], Any]


def _loop_call_later(delay: float, callback: Callable[[], None]) -> Any:
    loop = asyncio.get_running_loop()
    return loop.call_later(delay, callback)


class StateManager:
    """Own the :class:`AppState` and serialize updates to it.

    Listener callbacks run synchronously and may request further updates.
    A same-kind request made while that kind is being applied is queued and
    replayed after the current notification round completes.
    """

    def __init__(
        self,
        *,
        stop_timeout_s: float = 5.0,
        call_later: Optional[Scheduler] = None,
    ) -> None:
        self._state = AppState()
        self._stop_timeout_s = float(stop_timeout_s)
        self._call_later = call_later or _loop_call_later
        self._stop_timer: Any = None

        self._listeners: Listeners[AppState] = Listeners("state")
        self._connection_listeners: Listeners[ConnectionState] = Listeners("connection-state")
        self._task_listeners: Listeners[TaskState] = Listeners("task-state")

        self._updating_connection = False
        self._updating_task = False
        self._pending_connection: Deque[Tuple[ConnectionState, Optional[str]]] = deque()
        self._pending_task: Deque[Tuple[TaskState, Optional[str]]] = deque()

    # ------------------------------------------------------------------
    @property
    def state(self) -> AppState:
        return self._state

    @property
    def connection_state(self) -> ConnectionState:
        return self._state.connection

    @property
    def task_state(self) -> TaskState:
        return self._state.task

    @property
    def run_id(self) -> Optional[str]:
        return self._state.run_id

    @property
    def last_error(self) -> Optional[str]:
        return self._state.last_error

    @property
    def is_connected(self) -> bool:
        return self._state.connection is ConnectionState.CONNECTED

    @property
    def is_task_running(self) -> bool:
        return self._state.task in _RUNNING_STATES

    @property
    def can_start_task(self) -> bool:
        return self.is_connected and self._state.task in _STARTABLE_STATES

    @property
    def can_stop_task(self) -> bool:
        return self.is_task_running

    @property
    def stop_watchdog_armed(self) -> bool:
        return self._stop_timer is not None

    # ------------------------------------------------------------------
    def on_change(self, callback: Callable[[AppState], None]) -> Unsubscribe:
        return self._listeners.connect(callback)

    def on_connection_change(self, callback: Callable[[ConnectionState], None]) -> Unsubscribe:
        return self._connection_listeners.connect(callback)

    def on_task_change(self, callback: Callable[[TaskState], None]) -> Unsubscribe:
        return self._task_listeners.connect(callback)

    # ------------------------------------------------------------------
    def update_connection_state(self, state: ConnectionState | str, error: Optional[str] = None) -> None:
        new_state = ConnectionState(state)
        if self._updating_connection:
            self._pending_connection.append((new_state, error))
            return
        if new_state is self._state.connection and not error:
            return
        self._apply_connection(new_state, error)
        self._drain_connection()

    def update_task_state(self, state: TaskState | str, error: Optional[str] = None) -> None:
        new_state = TaskState(state)
        if self._updating_task:
            self._pending_task.append((new_state, error))
            return
        if new_state is self._state.task and not error:
            return
        self._apply_task(new_state, error)
        self._drain_task()

    def _apply_connection(self, new_state: ConnectionState, error: Optional[str]) -> None:
        self._updating_connection = True
        try:
            old_state = self._state.connection
            self._state = replace(
                self._state,
                connection=new_state,
                last_error=error if error else self._state.last_error,
            )
            self._listeners.emit(self._state)
            self._connection_listeners.emit(new_state)
            logger.info("connection state: %s -> %s", old_state.value, new_state.value)
            if new_state in (ConnectionState.ERROR, ConnectionState.CLOSED) and self._state.task is not TaskState.IDLE:
                logger.debug("connection %s; resetting task to idle", new_state.value)
                self.update_task_state(TaskState.IDLE)
        finally:
            self._updating_connection = False

    def _apply_task(self, new_state: TaskState, error: Optional[str]) -> None:
        self._updating_task = True
        try:
            old_state = self._state.task
            self._state = replace(
                self._state,
                task=new_state,
                last_error=error if error else self._state.last_error,
            )
            self._sync_stop_watchdog(old_state, new_state)
            self._listeners.emit(self._state)
            self._task_listeners.emit(new_state)
            logger.info("task state: %s -> %s", old_state.value, new_state.value)
        finally:
            self._updating_task = False

    def _drain_connection(self) -> None:
        while self._pending_connection and not self._updating_connection:
            state, error = self._pending_connection.popleft()
            self.update_connection_state(state, error)

    def _drain_task(self) -> None:
        while self._pending_task and not self._updating_task:
            state, error = self._pending_task.popleft()
            self.update_task_state(state, error)

    # ------------------------------------------------------------------
    def _sync_stop_watchdog(self, old_state: TaskState, new_state: TaskState) -> None:
        if new_state is TaskState.STOPPING:
            self._cancel_stop_watchdog()
            try:
                self._stop_timer = self._call_later(self._stop_timeout_s, self._on_stop_timeout)
            except RuntimeError:
                # no running event loop; the watchdog is unavailable
                logger.debug("stop watchdog not armed", exc_info=True)
                self._stop_timer = None
        elif old_state is TaskState.STOPPING:
            self._cancel_stop_watchdog()

    def _cancel_stop_watchdog(self) -> None:
        timer, self._stop_timer = self._stop_timer, None
        if timer is not None:
            timer.cancel()

    def _on_stop_timeout(self) -> None:
        self._stop_timer = None
        if self._state.task is TaskState.STOPPING:
            logger.warning("stop request not acknowledged within %.1fs; forcing idle", self._stop_timeout_s)
            self.update_task_state(TaskState.IDLE, STOP_TIMEOUT_ERROR)

    # ------------------------------------------------------------------
    def set_run_id(self, run_id: Optional[str]) -> None:
        if self._state.run_id == run_id:
            return
        self._state = replace(self._state, run_id=run_id)
        self._listeners.emit(self._state)
        logger.debug("run id set to %s", run_id)

    def set_last_message(self, message: Any) -> None:
        self._state = replace(self._state, last_message=message)
        self._listeners.emit(self._state)

    def infer_state_from_message(self, raw: Mapping[str, Any]) -> None:
        """Derive connection/task transitions from an inbound protocol frame."""

        message = parse_message(raw)
        self._state = replace(self._state, last_message=raw)
        current_task = self._state.task
        connection: Optional[ConnectionState] = None
        task: Optional[TaskState] = None
        error: Optional[str] = None

        if isinstance(message, SystemMessage):
            if message.status == "connected":
                connection = ConnectionState.CONNECTED
        elif isinstance(message, ChatMessage):
            if current_task is TaskState.IDLE and self.is_connected:
                task = TaskState.RUNNING
        elif isinstance(message, ResultMessage):
            if message.is_complete:
                task = TaskState.COMPLETED
            elif not message.is_partial and current_task is TaskState.STOPPING:
                task = TaskState.IDLE
        elif isinstance(message, CompletionMessage):
            if message.is_cancelled:
                task = TaskState.IDLE
            elif message.is_complete:
                task = TaskState.COMPLETED
        elif isinstance(message, InputRequestMessage):
            task = TaskState.AWAITING_INPUT
        elif isinstance(message, StopMessage):
            if current_task in _STOP_RESETTABLE:
                task = TaskState.IDLE
        elif isinstance(message, ErrorMessage):
            task = TaskState.ERROR
            error = message.error

        self._apply_batch(connection, task, error)

    def _apply_batch(
        self,
        connection: Optional[ConnectionState],
        task: Optional[TaskState],
        error: Optional[str],
    ) -> None:
        if self._updating_connection or self._updating_task:
            if connection is not None:
                self.update_connection_state(connection)
            if task is not None:
                self.update_task_state(task, error)
            return

        connection_changed = connection is not None and connection is not self._state.connection
        task_changed = task is not None and (task is not self._state.task or bool(error))
        if not connection_changed and not task_changed:
            return

        old_task = self._state.task
        self._updating_connection = connection_changed
        self._updating_task = task_changed
        try:
            self._state = replace(
                self._state,
                connection=connection if connection_changed else self._state.connection,
                task=task if task_changed else self._state.task,
                last_error=error if error else self._state.last_error,
            )
            if task_changed:
                assert task is not None
                self._sync_stop_watchdog(old_task, task)
            self._listeners.emit(self._state)
            if connection_changed:
                assert connection is not None
                self._connection_listeners.emit(connection)
            if task_changed:
                assert task is not None
                self._task_listeners.emit(task)
            logger.debug(
                "batch state update: connection=%s task=%s",
                self._state.connection.value,
                self._state.task.value,
            )
        finally:
            self._updating_connection = False
            self._updating_task = False
        self._drain_connection()
        self._drain_task()

    # ------------------------------------------------------------------
    def reset(self) -> None:
        self._cancel_stop_watchdog()
        self._pending_connection.clear()
        self._pending_task.clear()
        self._state = AppState()
        self._listeners.emit(self._state)

    def dispose(self) -> None:
        self._cancel_stop_watchdog()
        self._listeners.clear()
        self._connection_listeners.clear()
        self._task_listeners.clear()

    def state_summary(self) -> Dict[str, Any]:
        return {
            "connection": self._state.connection.value,
            "task": self._state.task.value,
            "run_id": self._state.run_id,
            "is_connected": self.is_connected,
            "is_task_running": self.is_task_running,
            "can_start_task": self.can_start_task,
            "can_stop_task": self.can_stop_task,
            "last_error": self._state.last_error,
        }


__all__ = [
    "AppState",
    "ConnectionState",
    "STOP_TIMEOUT_ERROR",
    "StateManager",
    "TaskState",
]
