from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Iterator

from .config import DEFAULT_PROFILE_MARGIN_SECONDS

LOGGER = logging.getLogger("searchbench.trigger")

_CLOSED = object()


def profile_window(
    interval: float, count: int, margin: float = DEFAULT_PROFILE_MARGIN_SECONDS
) -> float:
    """Duration a telemetry capture needs to outlive the last triggered query."""

    return count * interval + margin


class PulseSequence:
    """Finite, non-restartable stream of pulse timestamps.

    The first pulse is queued before the sequence is handed out; the rest are
    produced by a timer thread on an absolute schedule measured from a single
    monotonic origin. Pulses are buffered, so production never waits on the
    consumer.
    """

    def __init__(
        self,
        interval: float,
        count: int,
        clock: Callable[[], float] = time.monotonic,
        wallclock: Callable[[], float] = time.time,
    ) -> None:
        if count < 0:
            raise ValueError(f"pulse count must be >= 0, got {count}")
        if interval < 0:
            raise ValueError(f"pulse interval must be >= 0, got {interval}")
        self.interval = interval
        self.count = count
        self._clock = clock
        self._wallclock = wallclock
        # Room for every pulse plus the close marker.
        self._pulses: queue.Queue[object] = queue.Queue(maxsize=count + 1)
        self._stop_event = threading.Event()
        self._exhausted = False
        self._emitted = 0
        self._thread: threading.Thread | None = None

        origin = self._clock()
        if count == 0:
            self._pulses.put(_CLOSED)
            return
        self._pulses.put(self._wallclock())
        self._thread = threading.Thread(
            target=self._produce, args=(origin,), name="pulse-trigger", daemon=True
        )
        self._thread.start()

    def _produce(self, origin: float) -> None:
        try:
            for k in range(1, self.count):
                deadline = origin + k * self.interval
                remaining = deadline - self._clock()
                if remaining > 0 and self._stop_event.wait(timeout=remaining):
                    return
                if self._stop_event.is_set():
                    return
                self._pulses.put(self._wallclock())
        finally:
            self._pulses.put(_CLOSED)

    def __iter__(self) -> Iterator[float]:
        return self

    def __next__(self) -> float:
        if self._exhausted:
            raise StopIteration
        item = self._pulses.get()
        if item is _CLOSED:
            self._exhausted = True
            self._join()
            raise StopIteration
        self._emitted += 1
        return item  # type: ignore[return-value]

    @property
    def emitted(self) -> int:
        return self._emitted

    @property
    def closed(self) -> bool:
        return self._exhausted

    def close(self) -> None:
        """Stop the timer and release it; safe to call more than once."""

        self._stop_event.set()
        self._exhausted = True
        self._join()

    def _join(self) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
            self._thread = None

    def __enter__(self) -> PulseSequence:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class PulseTrigger:
    """Factory for per-case pulse sequences."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        wallclock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._wallclock = wallclock

    def start(self, interval: float, count: int) -> PulseSequence:
        LOGGER.info("Expecting %d result set(s), one every %.3fs", count, interval)
        return PulseSequence(interval, count, clock=self._clock, wallclock=self._wallclock)
