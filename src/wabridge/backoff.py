"""Backoff policies, kept free of I/O so they can be tested without timers."""

from __future__ import annotations


def retry_delay(attempt: int, base: float) -> float:
    """Linear delay before retrying a delivery after ``attempt`` failures."""
    return max(0, attempt) * base


def reconnect_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before reconnect number ``attempt``, growing with the attempt and capped."""
    return min(base * max(1, attempt), cap)
