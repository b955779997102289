"""Bounded per-run message history on top of a key-value store.

All runs live under a single storage key as ``{run_id: row}``. Each save
trims the run to ``max_messages_per_run``, then drops rows older than
``max_age_s`` and finally the least recently updated rows until at most
``max_runs`` remain. Read-modify-write cycles are serialized by one
``asyncio.Lock``; saves queued on the lock run in the order they were made.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from aiat.protocol.messages import START_TYPE, AgentMessage
from aiat.storage.kv_store import KeyValueStore
from aiat.storage.titles import extract_run_info

logger = logging.getLogger(__name__)

STORAGE_KEY = "aiat.messageHistory"
MAX_MESSAGES_PER_RUN = 1000
MAX_RUNS = 50
MAX_AGE_S = 7 * 24 * 60 * 60.0


@dataclass(slots=True)
class StoredMessage:
    message: AgentMessage
    run_id: str
    group_id: Optional[str] = None
    group_position: Optional[int] = None
    is_group_complete: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = self.message.to_dict()
        payload["run_id"] = self.run_id
        if self.group_id is not None:
            payload["group_id"] = self.group_id
        if self.group_position is not None:
            payload["group_position"] = self.group_position
        if self.is_group_complete is not None:
            payload["is_group_complete"] = self.is_group_complete
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StoredMessage":
        position = data.get("group_position")
        complete = data.get("is_group_complete")
        return cls(
            message=AgentMessage.from_dict(data),
            run_id=str(data.get("run_id") or ""),
            group_id=data.get("group_id"),
            group_position=int(position) if position is not None else None,
            is_group_complete=bool(complete) if complete is not None else None,
        )


@dataclass(slots=True)
class ActiveGroup:
    id: str
    start_time: float
    messages: List[StoredMessage] = field(default_factory=list)
    is_complete: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "start_time": self.start_time,
            "messages": [message.to_dict() for message in self.messages],
            "is_complete": self.is_complete,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ActiveGroup":
        return cls(
            id=str(data.get("id") or ""),
            start_time=float(data.get("start_time") or 0.0),
            messages=[StoredMessage.from_dict(m) for m in data.get("messages") or () if isinstance(m, Mapping)],
            is_complete=bool(data.get("is_complete", False)),
        )


@dataclass(frozen=True, slots=True)
class RunSummary:
    run_id: str
    last_updated: float
    message_count: int
    title: Optional[str] = None
    agent_name: Optional[str] = None
    task_description: Optional[str] = None
    first_message_time: Optional[float] = None


@dataclass(frozen=True, slots=True)
class StorageStats:
    total_runs: int
    total_messages: int
    oldest_run: Optional[float]
    newest_run: Optional[float]


History = Dict[str, Dict[str, Any]]


class MessageStore:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_messages_per_run: int = MAX_MESSAGES_PER_RUN,
        max_runs: int = MAX_RUNS,
        max_age_s: float = MAX_AGE_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.max_messages_per_run = int(max_messages_per_run)
        self.max_runs = int(max_runs)
        self.max_age_s = float(max_age_s)
        self._clock = clock
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def _load(self) -> History:
        try:
            history = self._store.get(STORAGE_KEY)
        except Exception:
            logger.warning("message history unreadable; treating as empty", exc_info=True)
            return {}
        if not isinstance(history, dict):
            return {}
        return {str(run_id): row for run_id, row in history.items() if isinstance(row, dict)}

    async def _persist(self, history: History) -> None:
        await self._store.update(STORAGE_KEY, history)

    def _new_row(self, first_message_time: Optional[float] = None) -> Dict[str, Any]:
        row: Dict[str, Any] = {"messages": [], "last_updated": self._clock()}
        if first_message_time is not None:
            row["first_message_time"] = first_message_time
        return row

    def _evict(self, history: History) -> None:
        now = self._clock()
        for run_id in [rid for rid, row in history.items() if now - float(row.get("last_updated") or 0.0) > self.max_age_s]:
            del history[run_id]
            logger.debug("evicted expired run %s", run_id)
        overflow = len(history) - self.max_runs
        if overflow <= 0:
            return
        oldest = sorted(history.items(), key=lambda item: float(item[1].get("last_updated") or 0.0))
        for run_id, _row in oldest[:overflow]:
            del history[run_id]
            logger.debug("evicted least recently updated run %s", run_id)

    # ------------------------------------------------------------------
    async def save_message(self, run_id: str, message: AgentMessage) -> None:
        if not run_id:
            return
        async with self._lock:
            try:
                history = self._load()
                row = history.get(run_id)
                if row is None:
                    row = history[run_id] = self._new_row(message.timestamp)
                if message.type == START_TYPE:
                    # fills missing run info only; renames and the first timestamp stay
                    for key, value in extract_run_info(message.to_dict()).items():
                        row.setdefault(key, value)
                messages = list(row.get("messages") or [])
                messages.append(StoredMessage(message=message, run_id=run_id).to_dict())
                if len(messages) > self.max_messages_per_run:
                    messages = messages[-self.max_messages_per_run:]
                row["messages"] = messages
                row["last_updated"] = self._clock()
                self._evict(history)
                await self._persist(history)
            except Exception:
                logger.error("failed to save message for run %s", run_id, exc_info=True)

    async def get_messages_for_run(self, run_id: str) -> List[AgentMessage]:
        if not run_id:
            return []
        row = self._load().get(run_id)
        if row is None:
            return []
        return [AgentMessage.from_dict(m) for m in row.get("messages") or () if isinstance(m, Mapping)]

    async def get_history_list(self) -> List[RunSummary]:
        summaries = [
            RunSummary(
                run_id=run_id,
                last_updated=float(row.get("last_updated") or 0.0),
                message_count=len(row.get("messages") or ()),
                title=row.get("title"),
                agent_name=row.get("agent_name"),
                task_description=row.get("task_description"),
                first_message_time=row.get("first_message_time"),
            )
            for run_id, row in self._load().items()
        ]
        summaries.sort(key=lambda summary: summary.last_updated, reverse=True)
        return summaries

    async def set_run_title(self, run_id: str, title: str) -> None:
        if not run_id:
            return
        async with self._lock:
            try:
                history = self._load()
                row = history.get(run_id)
                if row is None:
                    return
                row["title"] = title
                row["last_updated"] = self._clock()
                await self._persist(history)
            except Exception:
                logger.error("failed to set title for run %s", run_id, exc_info=True)

    async def delete_run_history(self, run_id: str) -> None:
        if not run_id:
            return
        async with self._lock:
            try:
                history = self._load()
                if history.pop(run_id, None) is None:
                    return
                await self._persist(history)
                logger.info("deleted history for run %s", run_id)
            except Exception:
                logger.error("failed to delete history for run %s", run_id, exc_info=True)

    async def clear_all_history(self) -> None:
        async with self._lock:
            try:
                await self._persist({})
                logger.info("cleared all message history")
            except Exception:
                logger.error("failed to clear message history", exc_info=True)

    async def get_storage_stats(self) -> StorageStats:
        history = self._load()
        if not history:
            return StorageStats(total_runs=0, total_messages=0, oldest_run=None, newest_run=None)
        stamps = [float(row.get("last_updated") or 0.0) for row in history.values()]
        return StorageStats(
            total_runs=len(history),
            total_messages=sum(len(row.get("messages") or ()) for row in history.values()),
            oldest_run=min(stamps),
            newest_run=max(stamps),
        )

    # ------------------------------------------------------------------
    async def save_active_group(self, run_id: str, group: ActiveGroup) -> None:
        if not run_id:
            return
        async with self._lock:
            try:
                history = self._load()
                row = history.get(run_id)
                if row is None:
                    row = history[run_id] = self._new_row()
                row["active_group"] = group.to_dict()
                row["last_updated"] = self._clock()
                await self._persist(history)
            except Exception:
                logger.error("failed to save active group for run %s", run_id, exc_info=True)

    async def get_active_group(self, run_id: str) -> Optional[ActiveGroup]:
        if not run_id:
            return None
        row = self._load().get(run_id)
        if row is None or not isinstance(row.get("active_group"), Mapping):
            return None
        return ActiveGroup.from_dict(row["active_group"])

    async def clear_active_group(self, run_id: str) -> None:
        if not run_id:
            return
        async with self._lock:
            try:
                history = self._load()
                row = history.get(run_id)
                if row is None:
                    return
                row.pop("active_group", None)
                row["last_updated"] = self._clock()
                await self._persist(history)
            except Exception:
                logger.error("failed to clear active group for run %s", run_id, exc_info=True)


__all__ = [
    "ActiveGroup",
    "MAX_AGE_S",
    "MAX_MESSAGES_PER_RUN",
    "MAX_RUNS",
    "MessageStore",
    "RunSummary",
    "STORAGE_KEY",
    "StorageStats",
    "StoredMessage",
]
