from __future__ import annotations

from typing import List

import pytest

from aiat.utils.listeners import Listeners


def test_emit_in_registration_order_and_unsubscribe() -> None:
    listeners: Listeners[int] = Listeners("numbers")
    seen: List[str] = []
    first = listeners.connect(lambda v: seen.append(f"a{v}"))
    listeners.connect(lambda v: seen.append(f"b{v}"))

    listeners.emit(1)
    first()
    first()
    listeners.emit(2)

    assert seen == ["a1", "b1", "b2"]
    assert len(listeners) == 1


def test_duplicate_registration_rejected() -> None:
    listeners: Listeners[int] = Listeners()
    seen: List[int] = []
    listeners.connect(seen.append)
    with pytest.raises(AssertionError):
        listeners.connect(seen.append)


def test_changes_during_emit_apply_next_time() -> None:
    listeners: Listeners[int] = Listeners()
    seen: List[str] = []

    def late(value: int) -> None:
        seen.append(f"late{value}")

    def adder(value: int) -> None:
        seen.append(f"adder{value}")
        if value == 1:
            listeners.connect(late)

    listeners.connect(adder)
    listeners.emit(1)
    listeners.emit(2)
    assert seen == ["adder1", "adder2", "late2"]


def test_isolated_listeners_survive_failures() -> None:
    listeners: Listeners[int] = Listeners("events", isolate=True)
    seen: List[int] = []

    def broken(value: int) -> None:
        raise RuntimeError("boom")

    listeners.connect(broken)
    listeners.connect(seen.append)
    listeners.emit(3)
    assert seen == [3]


def test_plain_listeners_propagate() -> None:
    listeners: Listeners[int] = Listeners()

    def broken(value: int) -> None:
        raise RuntimeError("boom")

    listeners.connect(broken)
    with pytest.raises(RuntimeError):
        listeners.emit(1)

    listeners.clear()
    listeners.emit(1)
    assert len(listeners) == 0
