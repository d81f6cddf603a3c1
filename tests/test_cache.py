"""Tests for the TTL cache."""

from __future__ import annotations

import pytest

from delphi_pulse.utils.cache import TTLCache


class Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_entry_expires_after_ttl() -> None:
    """Test values are served until exactly ttl seconds have passed."""
    clock = Clock()
    cache: TTLCache[int] = TTLCache(5.0, clock=clock)
    cache.set("answer", 42)

    clock.now = 104.9
    assert cache.get("answer") == 42
    clock.now = 105.0
    assert cache.get("answer") is None


def test_get_or_compute_only_computes_on_miss() -> None:
    """Test the compute function runs once per fresh entry."""
    calls: list[int] = []
    cache: TTLCache[int] = TTLCache(5.0, clock=Clock())

    def compute() -> int:
        calls.append(1)
        return len(calls)

    assert cache.get_or_compute("k", compute) == 1
    assert cache.get_or_compute("k", compute) == 1
    assert len(calls) == 1


def test_invalidate() -> None:
    """Test invalidating one key or all keys."""
    cache: TTLCache[str] = TTLCache(60.0, clock=Clock())
    cache.set("a", "1")
    cache.set("b", "2")

    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == "2"

    cache.invalidate()
    assert cache.get("b") is None


def test_negative_ttl_rejected() -> None:
    """Test a negative ttl is a configuration error."""
    with pytest.raises(ValueError):
        TTLCache(-1.0)
