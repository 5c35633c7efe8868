"""
Coalescing progress channel.

Workers call :meth:`ProgressReporter.notify` as often as they like; the sink
receives at most one snapshot per ``min_interval`` seconds. Notifications
arriving inside the window are folded into a single delayed emission.
:meth:`flush` always emits immediately and cancels any pending one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional

logger = logging.getLogger("progress")

DEFAULT_MIN_INTERVAL = 0.5


class ProgressReporter:
    """
    Parameters
    ----------
    sink : callable
        Receives each emitted snapshot.
    snapshot : callable
        Produces the current state when an emission happens.
    min_interval : float
        Minimum seconds between two throttled emissions.
    clock : callable
        Monotonic time source. Injected by tests.
    """

    def __init__(
        self,
        sink: Optional[Callable[[Any], None]],
        snapshot: Callable[[], Any],
        min_interval: float = DEFAULT_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sink = sink
        self.snapshot = snapshot
        self.min_interval = min_interval
        self._clock = clock
        self._last_emit: Optional[float] = None
        self._pending: Optional[asyncio.TimerHandle] = None
        self.emitted = 0

    def notify(self) -> None:
        """Request an emission, coalesced with any already scheduled."""
        if self.sink is None or self._pending is not None:
            return

        now = self._clock()
        elapsed = None if self._last_emit is None else now - self._last_emit
        if elapsed is None or elapsed >= self.min_interval:
            self._emit()
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._emit()
            return
        self._pending = loop.call_later(self.min_interval - elapsed, self._emit)

    def flush(self) -> None:
        """Emit now, regardless of throttling state."""
        self.cancel()
        if self.sink is not None:
            self._emit()

    def cancel(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _emit(self) -> None:
        self._pending = None
        self._last_emit = self._clock()
        self.emitted += 1
        try:
            self.sink(self.snapshot())
        except Exception:
            logger.exception("Progress sink raised")
