"""Error taxonomy and retry helpers for the orchestrator client."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Mapping, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCategory(str, Enum):
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    SERVER = "server"
    TASK_START = "task_start"
    TASK_STOP = "task_stop"
    TASK_EXECUTION = "task_execution"
    TASK_INPUT = "task_input"
    PROTOCOL = "protocol"
    TOOL = "tool"
    PERSISTENCE = "persistence"
    CONFIGURATION = "configuration"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ClientError(RuntimeError):
    """Structured failure raised by the client and handed to error listeners."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        *,
        retryable: bool = False,
        context: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = ErrorCategory(category)
        self.severity = ErrorSeverity(severity)
        self.retryable = bool(retryable)
        self.context: Dict[str, Any] = dict(context or {})
        self.timestamp = float(timestamp) if timestamp is not None else time.time()

    @classmethod
    def wrap(
        cls,
        exc: BaseException | str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        *,
        retryable: bool = False,
        context: Optional[Mapping[str, Any]] = None,
    ) -> "ClientError":
        message = exc if isinstance(exc, str) else (str(exc) or exc.__class__.__name__)
        error = cls(message, category, severity, retryable=retryable, context=context)
        if isinstance(exc, BaseException):
            error.__cause__ = exc
        return error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "context": dict(self.context),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay: float
    max_delay: float
    backoff_factor: float
    retryable: FrozenSet[ErrorCategory] = field(default_factory=frozenset)

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds after the *attempt*-th failure (1-based)."""

        delay = self.base_delay * (self.backoff_factor ** max(0, attempt - 1))
        return min(delay, self.max_delay)

    def covers(self, category: ErrorCategory) -> bool:
        return not self.retryable or category in self.retryable


NETWORK_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    backoff_factor=2.0,
    retryable=frozenset({ErrorCategory.CONNECTION, ErrorCategory.TIMEOUT, ErrorCategory.NETWORK}),
)
TASK_POLICY = RetryPolicy(
    max_attempts=2,
    base_delay=0.5,
    max_delay=5.0,
    backoff_factor=1.5,
    retryable=frozenset({ErrorCategory.TASK_START, ErrorCategory.TASK_STOP}),
)
TOOL_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay=2.0,
    max_delay=15.0,
    backoff_factor=2.0,
    retryable=frozenset({ErrorCategory.TOOL}),
)

_DEFAULT_POLICIES: Dict[ErrorCategory, RetryPolicy] = {
    ErrorCategory.CONNECTION: NETWORK_POLICY,
    ErrorCategory.TIMEOUT: NETWORK_POLICY,
    ErrorCategory.NETWORK: NETWORK_POLICY,
    ErrorCategory.TASK_START: TASK_POLICY,
    ErrorCategory.TASK_STOP: TASK_POLICY,
    ErrorCategory.TOOL: TOOL_POLICY,
}


def policy_for(category: ErrorCategory) -> Optional[RetryPolicy]:
    return _DEFAULT_POLICIES.get(ErrorCategory(category))


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    category: ErrorCategory,
    policy: Optional[RetryPolicy] = None,
    *,
    context: Optional[Mapping[str, Any]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run *operation* until it succeeds or the policy gives up.

    Every failure is wrapped as a retryable :class:`ClientError` of
    *category*. Categories without a policy get a single attempt. The last
    wrapped error is raised once attempts are exhausted.
    """

    category = ErrorCategory(category)
    if policy is None:
        policy = policy_for(category)
    max_attempts = policy.max_attempts if policy is not None and policy.covers(category) else 1
    last_error: Optional[ClientError] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if isinstance(exc, ClientError):
                last_error = exc
            else:
                last_error = ClientError.wrap(exc, category, retryable=True, context=context)
            if attempt >= max_attempts or not last_error.retryable:
                break
            assert policy is not None
            delay = policy.delay_for(attempt)
            logger.debug(
                "%s attempt %d/%d failed (%s); retrying in %.2fs",
                category.value,
                attempt,
                max_attempts,
                last_error.message,
                delay,
            )
            await sleep(delay)
    assert last_error is not None
    logger.info("%s failed after %d attempt(s): %s", category.value, max_attempts, last_error.message)
    raise last_error


_DESCRIPTIONS: Dict[ErrorCategory, Tuple[str, Tuple[str, ...]]] = {
    ErrorCategory.CONNECTION: (
        "Could not connect to the orchestrator",
        ("check the network connection", "confirm the server address", "retry later"),
    ),
    ErrorCategory.TIMEOUT: (
        "The orchestrator did not answer in time",
        ("check the network connection", "retry later"),
    ),
    ErrorCategory.AUTHENTICATION: (
        "The orchestrator rejected the credentials",
        ("check the auth token", "contact an administrator"),
    ),
    ErrorCategory.SERVER: (
        "The orchestrator reported an internal error",
        ("retry later",),
    ),
    ErrorCategory.TASK_START: (
        "The task could not be started",
        ("check the task parameters", "confirm the server is healthy"),
    ),
    ErrorCategory.TASK_STOP: ("The task could not be stopped", ("retry the stop request",)),
    ErrorCategory.TASK_EXECUTION: ("The task failed while running", ("inspect the task output",)),
    ErrorCategory.TASK_INPUT: ("The input response could not be delivered", ("send the input again",)),
    ErrorCategory.PROTOCOL: ("The peer sent a malformed message", ("update the client and server",)),
    ErrorCategory.TOOL: ("A tool invocation failed", ("check the tool arguments",)),
    ErrorCategory.PERSISTENCE: ("Message history could not be saved", ("check the history path",)),
    ErrorCategory.CONFIGURATION: (
        "The client configuration is invalid",
        ("check the AIAT_* environment variables",),
    ),
    ErrorCategory.NETWORK: (
        "A network error occurred",
        ("check the network connection", "retry later"),
    ),
    ErrorCategory.UNKNOWN: ("An unexpected error occurred", ()),
}


def describe_error(error: ClientError | ErrorCategory) -> Tuple[str, Tuple[str, ...]]:
    """Return a human summary and suggested remedies for *error*."""

    category = error.category if isinstance(error, ClientError) else ErrorCategory(error)
    summary, suggestions = _DESCRIPTIONS.get(category, _DESCRIPTIONS[ErrorCategory.UNKNOWN])
    if isinstance(error, ClientError):
        summary = f"[{error.severity.value.upper()}] {summary}: {error.message}"
        if error.retryable:
            summary = f"{summary} (will retry automatically)"
    return summary, suggestions


__all__ = [
    "ClientError",
    "ErrorCategory",
    "ErrorSeverity",
    "NETWORK_POLICY",
    "RetryPolicy",
    "TASK_POLICY",
    "TOOL_POLICY",
    "describe_error",
    "execute_with_retry",
    "policy_for",
]
