"""Persistent, bounded message history keyed by run id."""

from __future__ import annotations

from .kv_store import JsonFileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from .message_store import (
    STORAGE_KEY,
    ActiveGroup,
    MessageStore,
    RunSummary,
    StorageStats,
    StoredMessage,
)
from .titles import extract_run_info, generate_run_title

__all__ = [name for name in globals().keys() if not name.startswith("_")]
