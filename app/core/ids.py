"""Identifier utilities for submissions and queued jobs."""

from __future__ import annotations

import secrets
import threading
import time

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
_state = {"millis": 0, "counter": 0}
_state_lock = threading.Lock()


def _base36(value: int) -> str:
    digits: list[str] = []
    while True:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
        if value == 0:
            return "".join(reversed(digits))


def _next_counter(now_millis: int) -> int:
    with _state_lock:
        if now_millis == _state["millis"]:
            _state["counter"] += 1
        else:
            _state["millis"] = now_millis
            _state["counter"] = 0
        return _state["counter"]


def generate_cuid(length: int = 24, *, prefix: str = "c") -> str:
    """Generate a sortable, collision-resistant lowercase identifier.

    Layout: ``prefix + base36(millis) + base36(counter, 4) + random`` truncated
    to ``length`` characters overall.
    """
    now_millis = int(time.time() * 1000)
    counter = _next_counter(now_millis)

    body_length = max(length - len(prefix), 8)
    ordered = f"{_base36(now_millis)}{_base36(counter).rjust(4, '0')}"
    padding = "".join(
        secrets.choice(_BASE36) for _ in range(max(body_length - len(ordered), 0))
    )
    return f"{prefix}{(ordered + padding)[:body_length]}"


def generate_job_id() -> str:
    """Identifier for queued background jobs."""
    return generate_cuid(20, prefix="job")
