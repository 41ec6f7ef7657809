"""Platform services: locks, event groups, clocks and diagnostic logging."""

from __future__ import annotations

import sys
import threading
import time
from enum import IntEnum

_UINT32_MASK = 0xFFFFFFFF

_log_level = 0


class LogLevel(IntEnum):
    """Severity of a diagnostic message; lower values are more severe."""

    CRIT = 0
    ERR = 1
    WRN = 2
    INFO = 3
    DEB = 4


class Mutex:
    """A non-reentrant lock that can also be used as a context manager."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def lock(self) -> None:
        """Block until the lock is taken."""
        self._lock.acquire()

    def try_lock(self) -> bool:
        """Take the lock if it is free; return whether it was taken."""
        return self._lock.acquire(blocking=False)

    def unlock(self) -> None:
        """Release the lock."""
        self._lock.release()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def __enter__(self) -> Mutex:
        self.lock()
        return self

    def __exit__(self, *args) -> None:
        self.unlock()


class EventGroup:
    """A set of event bits that threads can set, clear and wait for."""

    def __init__(self, bits: int = 0) -> None:
        self._bits = bits & 0xFF
        self._cond = threading.Condition()

    @property
    def bits(self) -> int:
        with self._cond:
            return self._bits

    def wait(self, bits: int, clear: bool = False, timeout: float = 0) -> int:
        """Wait up to ``timeout`` milliseconds for any of ``bits``.

        Returns the requested bits that were set, or 0 on timeout. If
        ``clear`` is true, the requested bits are cleared once seen.
        """
        deadline = time.monotonic() + max(timeout, 0) / 1000.0
        with self._cond:
            while not self._bits & bits:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return 0
                self._cond.wait(remaining)
            matched = self._bits & bits
            if clear:
                self._bits &= ~bits & 0xFF
            return matched

    def check(self, bits: int, clear: bool = False) -> int:
        """Return the requested bits that are set now, without waiting."""
        with self._cond:
            matched = self._bits & bits
            if clear and matched:
                self._bits &= ~bits & 0xFF
            return matched

    def set(self, bits: int) -> None:
        """Set ``bits`` and wake any waiters."""
        with self._cond:
            self._bits |= bits & 0xFF
            self._cond.notify_all()

    def clear(self, bits: int) -> None:
        """Clear ``bits``."""
        with self._cond:
            self._bits &= ~bits & 0xFF


def millis() -> int:
    """Monotonic milliseconds, wrapping at 32 bits."""
    return (time.monotonic_ns() // 1_000_000) & _UINT32_MASK


def micros() -> int:
    """Monotonic microseconds, wrapping at 32 bits."""
    return (time.monotonic_ns() // 1_000) & _UINT32_MASK


def sleep(millis: float) -> None:
    """Sleep for the given number of milliseconds."""
    time.sleep(max(millis, 0) / 1000.0)


def sleep_us(us: float) -> None:
    """Sleep for the given number of microseconds."""
    end = time.perf_counter_ns() + int(max(us, 0) * 1000)
    remaining = end - time.perf_counter_ns()
    if remaining > 200_000:
        time.sleep((remaining - 100_000) / 1e9)
    while time.perf_counter_ns() < end:
        pass


def set_log_level(level: int) -> None:
    """Set the threshold: messages with a level below it are printed."""
    global _log_level
    _log_level = int(level)


def get_log_level() -> int:
    """Return the current log threshold."""
    return _log_level


def log(level: int, message: str) -> None:
    """Write ``message`` to stderr, stamped with the time, if enabled."""
    if level < _log_level:
        text = message if message.endswith("\n") else message + "\n"
        sys.stderr.write(f"{millis():08d} ms: {text}")