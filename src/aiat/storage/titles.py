"""Readable titles and descriptions for run history rows."""

from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional

TITLE_MAX_LENGTH = 50
DESCRIPTION_MAX_LENGTH = 100
FALLBACK_LENGTH = 20

DEFAULT_TITLE = "Agent task"
NEW_TASK_TITLE = "New task"

# first match wins, so longer phrases come before their own prefixes
_TITLE_PREFIXES = (
    "帮我看一下", "我需要", "麻烦你", "帮我",
    "分析", "设计", "实现", "测试", "调试", "优化", "重构", "部署",
    "请", "能否", "可以",
    "检查", "查看", "找出", "解决", "修复", "创建", "编写", "开发",
    "please help me", "please", "help me", "i need to", "i need", "can you", "could you",
    "analyze", "analyse", "design", "implement", "test", "debug", "optimize", "refactor", "deploy",
    "check", "look at", "find", "solve", "fix", "create", "write", "develop",
)

_LEADING_PUNCTUATION = re.compile(r"^[：:，,\s]+")

_QUESTION_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^如何", r"^怎么", r"^怎样", r"^什么时候", r"^什么", r"^哪里", r"^为什么", r"^多久",
        r"^how (?:do i|to|can i)\b", r"^how\b", r"^what\b", r"^where\b", r"^why\b", r"^when\b",
    )
)


def truncate_text(text: Optional[str], max_length: int) -> Optional[str]:
    if not text or len(text) <= max_length:
        return text
    return text[:max_length] + "..."


def _strip_prefix(title: str) -> str:
    lowered = title.lower()
    for prefix in _TITLE_PREFIXES:
        if not lowered.startswith(prefix):
            continue
        rest = title[len(prefix):]
        # english prefixes must end on a word boundary
        if prefix.isascii() and rest[:1].isalnum():
            continue
        return rest.strip()
    return title


def generate_run_title(content: Optional[str]) -> str:
    """Derive a short title from the task text of a run."""

    if not content:
        return NEW_TASK_TITLE
    title = _strip_prefix(content.strip())
    title = _LEADING_PUNCTUATION.sub("", title)
    for pattern in _QUESTION_PATTERNS:
        if pattern.search(title):
            title = pattern.sub("", title, count=1).strip()
            break
    title = truncate_text(title, TITLE_MAX_LENGTH) or ""
    if len(title) < 2:
        if len(content) > FALLBACK_LENGTH:
            return truncate_text(content, FALLBACK_LENGTH) or DEFAULT_TITLE
        return DEFAULT_TITLE
    return title


def agent_name_from_source(source: Any) -> Optional[str]:
    if not isinstance(source, str) or not source:
        return None
    return source.split(".")[-1]


def task_text(message: Mapping[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str) and content:
        return content
    data = message.get("data")
    if isinstance(data, Mapping):
        for key in ("task", "content", "name"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    return ""


def extract_run_info(message: Mapping[str, Any]) -> Dict[str, Any]:
    """Return ``title``/``agent_name``/``task_description``/``first_message_time`` for a run."""

    info: Dict[str, Any] = {"first_message_time": message.get("timestamp")}
    agent_name = agent_name_from_source(message.get("source"))
    if agent_name:
        info["agent_name"] = agent_name
    text = task_text(message)
    if text:
        info["task_description"] = truncate_text(text, DESCRIPTION_MAX_LENGTH)
        info["title"] = generate_run_title(text)
    else:
        info["title"] = NEW_TASK_TITLE if message.get("type") == "start" else DEFAULT_TITLE
    return info


__all__ = [
    "DEFAULT_TITLE",
    "NEW_TASK_TITLE",
    "agent_name_from_source",
    "extract_run_info",
    "generate_run_title",
    "task_text",
    "truncate_text",
]
