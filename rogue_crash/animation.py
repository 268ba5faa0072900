# animation.py
"""
Multiplier Animation Driver.

Local, non-authoritative clock that turns elapsed wall-clock time into the
number the player watches climb:

    multiplier = 1.0 + elapsed / GROWTH_PERIOD

What the player sees here is NOT what the store accepts: a cash-out sent
with this value can still come back TooLateCrashed when the real crash
point (revealed concurrently) was lower.
"""

from __future__ import annotations

import time
import asyncio
from enum import Enum
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Callable, Optional

from .config import GameConfig
from .errors import TooLateCrashed
from .utils import multiplier_to_decimal, multiplier_to_int

ONE = Decimal("1.00")


class DisplayState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    CRASHED = "CRASHED"
    STOPPED = "STOPPED"   # cashed out / abandoned


@dataclass
class Frame:
    state: DisplayState
    multiplier: Decimal
    elapsed: float


class MultiplierClock:

    def __init__(
        self,
        growth_period: float = GameConfig.GROWTH_PERIOD_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if growth_period <= 0:
            raise ValueError("growth_period must be positive")
        self._growth_period = Decimal(str(growth_period))
        self._clock = clock
        self._start_time: Optional[float] = None
        self._crash_point: Optional[int] = None
        self._state = DisplayState.IDLE
        self._last = Frame(DisplayState.IDLE, ONE, 0.0)

    # =========================
    # STATE
    # =========================

    @property
    def running(self) -> bool:
        return self._state == DisplayState.RUNNING

    @property
    def state(self) -> DisplayState:
        return self._state

    @property
    def crash_point(self) -> Optional[int]:
        return self._crash_point

    def start(self) -> None:
        """New round: reset the timer and forget the previous crash point."""
        self._start_time = self._clock()
        self._crash_point = None
        self._state = DisplayState.RUNNING
        self._last = Frame(DisplayState.RUNNING, ONE, 0.0)

    def set_crash_point(self, crash_multiplier: int) -> None:
        """Authoritative crash point (scaled by 100) once it is revealed."""
        if crash_multiplier <= 0:
            raise ValueError("crash point must be revealed (non-zero)")
        self._crash_point = crash_multiplier

    def stop(self) -> Frame:
        if self._state == DisplayState.RUNNING:
            self._state = DisplayState.STOPPED
            self._last = Frame(DisplayState.STOPPED, self._last.multiplier, self._last.elapsed)
        return self._last

    # =========================
    # MATH
    # =========================

    def multiplier_at(self, elapsed: float) -> Decimal:
        """Pure function: seconds since start -> multiplier (2 decimals, truncated)."""
        if elapsed <= 0:
            return ONE
        value = ONE + Decimal(str(elapsed)) / self._growth_period
        return value.quantize(Decimal("0.01"), rounding=ROUND_DOWN)

    def tick(self) -> Frame:
        if self._state != DisplayState.RUNNING or self._start_time is None:
            return self._last

        elapsed = max(self._clock() - self._start_time, 0.0)
        mult = self.multiplier_at(elapsed)

        if self._crash_point is not None and multiplier_to_int(mult) >= self._crash_point:
            self._state = DisplayState.CRASHED
            mult = multiplier_to_decimal(self._crash_point)

        self._last = Frame(self._state, mult, elapsed)
        return self._last

    def cash_out_value(self) -> int:
        """
        Current multiplier truncated to an int scaled by 100, for cash_out().

        Only a running animation can be cashed out: once the display has
        crashed the round is lost, whatever the clamped frame shows.
        """
        frame = self.tick()
        if frame.state == DisplayState.CRASHED:
            raise TooLateCrashed(detail=f"display crashed at {frame.multiplier}x")
        if frame.state != DisplayState.RUNNING:
            raise ValueError(f"Cannot cash out while the animation is {frame.state.value}")
        return multiplier_to_int(frame.multiplier)

    # =========================
    # LOOP
    # =========================

    async def run(
        self,
        on_tick: Optional[Callable[[Frame], None]] = None,
        interval: float = GameConfig.TICK_INTERVAL_SEC,
    ) -> Frame:
        """Tick until crashed or stopped. Returns the final frame."""
        if self._state == DisplayState.IDLE:
            self.start()
        while True:
            frame = self.tick()
            if on_tick is not None:
                on_tick(frame)
            if frame.state != DisplayState.RUNNING:
                return frame
            await asyncio.sleep(interval)
