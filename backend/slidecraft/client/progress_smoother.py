"""Client-side smoothing of sparse GenerationState progress updates.

The backend reports progress once per phase, so a raw progress bar sits
still for tens of seconds. The smoother keeps a separate ``displayed``
value that creeps toward a per-phase cap between authoritative updates.
"""

from __future__ import annotations

import threading
from collections.abc import Callable


TERMINAL = {"completed", "failed"}

_MESSAGE_CAPS = {
    "Researching your topic": 49,
    "Drafting slide content": 89,
    "Finalizing your slide deck": 99,
}

_PHASE_CAPS = {
    "research": (50, 49),
    "drafting": (90, 89),
    "finalizing": (100, 99),
}


def progress_cap(message: str | None, phase: str | None, progress: int) -> int:
    if phase in TERMINAL:
        return progress
    if message in _MESSAGE_CAPS:
        return max(progress, _MESSAGE_CAPS[message])
    if phase in _PHASE_CAPS:
        ceiling, cap = _PHASE_CAPS[phase]
        if progress < ceiling:
            return max(progress, cap)
    return progress


class ProgressSmoother:
    def __init__(
        self,
        *,
        interval: float = 1.5,
        on_change: Callable[[int], None] | None = None,
    ):
        self.interval = interval
        self.on_change = on_change
        self.displayed: int | None = None
        self.cap: int | None = None
        self.phase: str | None = None
        self._lock = threading.Lock()
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def ticking(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def update(self, phase: str | None, progress: int, message: str | None = None, *, start_ticker: bool = True) -> int:
        """Apply an authoritative update; returns the new displayed value."""
        self.stop()
        with self._lock:
            self.phase = phase
            if phase in TERMINAL or self.displayed is None:
                self.displayed = progress
            else:
                self.displayed = max(self.displayed, progress)
            self.cap = progress_cap(message, phase, progress)
            displayed = self.displayed
            should_tick = self.cap > displayed
        self._emit(displayed)
        if should_tick and start_ticker:
            self._start_ticker()
        return displayed

    def tick(self) -> bool:
        """Advance one step toward the cap; False once the cap is reached."""
        with self._lock:
            if self.displayed is None or self.cap is None or self.displayed >= self.cap:
                return False
            self.displayed += 1
            displayed = self.displayed
            more = displayed < self.cap
        self._emit(displayed)
        return more

    def reset(self, progress: int | None = None) -> None:
        self.stop()
        with self._lock:
            self.displayed = progress
            self.cap = progress
            self.phase = None

    def stop(self) -> None:
        stop_event, thread = self._stop_event, self._thread
        self._stop_event, self._thread = None, None
        if stop_event is not None:
            stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval * 2)

    def _start_ticker(self) -> None:
        stop_event = threading.Event()

        def run() -> None:
            while not stop_event.wait(self.interval):
                if not self.tick():
                    return

        thread = threading.Thread(target=run, name="progress-smoother", daemon=True)
        self._stop_event, self._thread = stop_event, thread
        thread.start()

    def _emit(self, value: int) -> None:
        if self.on_change is not None:
            self.on_change(value)
