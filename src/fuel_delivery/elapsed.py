"""Live on-site timer shown while the completion wizard is open."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, Optional

from . import log

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_clock(moment: datetime, *, seconds: bool = True) -> str:
    """Render ``moment`` as a 12-hour clock, e.g. ``9:05:07 AM``."""
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    if seconds:
        return f"{hour}:{moment.minute:02d}:{moment.second:02d} {suffix}"
    return f"{hour}:{moment.minute:02d} {suffix}"


@dataclass(frozen=True)
class ElapsedSnapshot:
    arrival: datetime
    now: datetime
    elapsed_minutes: int

    @property
    def arrival_label(self) -> str:
        return format_clock(self.arrival, seconds=False)

    @property
    def clock_label(self) -> str:
        return format_clock(self.now)


def elapsed_snapshot(arrival: datetime, now: datetime) -> ElapsedSnapshot:
    """Whole minutes on site, floored."""
    minutes = math.floor((now - arrival).total_seconds() / 60)
    return ElapsedSnapshot(arrival=arrival, now=now, elapsed_minutes=minutes)


class ElapsedTimeReporter:
    """Recompute the elapsed snapshot on a fixed interval until stopped.

    - ``start`` spawns one daemon thread; calling it again is a no-op.
    - ``stop`` cancels the tick exactly once. Once it returns, ``on_tick`` is
      never invoked again.
    - ``snapshot`` can be called at any time and always reflects the clock.
    """

    def __init__(
        self,
        arrival: datetime,
        *,
        interval: float = 1.0,
        clock: Optional[Clock] = None,
        on_tick: Optional[Callable[[ElapsedSnapshot], None]] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._arrival = arrival
        self._interval = interval
        self._clock = clock or utc_now
        self._on_tick = on_tick
        self._stop = threading.Event()
        self._lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self._latest = elapsed_snapshot(arrival, self._clock())
        self._ticks = 0

    @property
    def arrival(self) -> datetime:
        return self._arrival

    @property
    def is_running(self) -> bool:
        return self._thread is not None and not self._stop.is_set()

    @property
    def ticks(self) -> int:
        with self._lock:
            return self._ticks

    @property
    def latest(self) -> ElapsedSnapshot:
        with self._lock:
            return self._latest

    def snapshot(self) -> ElapsedSnapshot:
        return elapsed_snapshot(self._arrival, self._clock())

    def start(self) -> None:
        if self._thread is not None or self._stop.is_set():
            return
        self._thread = threading.Thread(target=self._run, name="elapsed_time_reporter", daemon=True)
        self._thread.start()
        log.debug("Elapsed timer started (arrival=%s, interval=%ss)", self._arrival.isoformat(), self._interval)

    def stop(self) -> None:
        with self._lock:
            if self._stop.is_set():
                return
            self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        log.debug("Elapsed timer stopped after %d ticks", self.ticks)

    def tick(self) -> Optional[ElapsedSnapshot]:
        """Recompute once; returns ``None`` after the reporter has been stopped."""
        with self._lock:
            if self._stop.is_set():
                return None
            self._latest = self.snapshot()
            self._ticks += 1
            if self._on_tick is not None:
                self._on_tick(self._latest)
            return self._latest

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self.tick()
