"""Clock and deferred calls used for waiting-room and phase timers.

Production code runs on eventlet green threads. Tests substitute a manual
scheduler with a virtual clock so timer-driven transitions replay
deterministically.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import eventlet

logger = logging.getLogger(__name__)


class TimerHandle(ABC):
    @abstractmethod
    def cancel(self) -> None:
        """Prevent the call from running. Cancelling twice is harmless."""
        ...


class TimerScheduler(ABC):
    @abstractmethod
    def now_ms(self) -> int:
        """Current time in epoch milliseconds."""
        ...

    @abstractmethod
    def call_later(self, delay_s: float, fn: Callable[..., Any], *args) -> TimerHandle:
        """Run ``fn(*args)`` once after ``delay_s`` seconds."""
        ...


class _GreenThreadHandle(TimerHandle):
    def __init__(self, green_thread: eventlet.greenthread.GreenThread):
        self._green_thread = green_thread

    def cancel(self) -> None:
        self._green_thread.cancel()


class EventletScheduler(TimerScheduler):
    """Timers backed by ``eventlet.spawn_after``."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def call_later(self, delay_s: float, fn: Callable[..., Any], *args) -> TimerHandle:
        return _GreenThreadHandle(eventlet.spawn_after(max(0.0, delay_s), fn, *args))
