from decimal import Decimal

import pytest

from rogue_crash.animation import DisplayState, MultiplierClock
from rogue_crash.errors import TooLateCrashed


class FakeClock:
    def __init__(self, step: float = 0.0):
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


def test_multiplier_curve():
    clock = MultiplierClock(growth_period=1.0, clock=FakeClock())
    assert clock.multiplier_at(0) == Decimal("1.00")
    assert clock.multiplier_at(0.5) == Decimal("1.50")
    assert clock.multiplier_at(1.234) == Decimal("2.23")
    assert clock.multiplier_at(-3) == Decimal("1.00")


def test_growth_period_scales_curve():
    clock = MultiplierClock(growth_period=2.0, clock=FakeClock())
    assert clock.multiplier_at(1.0) == Decimal("1.50")


def test_invalid_growth_period():
    with pytest.raises(ValueError):
        MultiplierClock(growth_period=0)


def test_idle_until_started():
    clock = MultiplierClock(clock=FakeClock())
    frame = clock.tick()
    assert frame.state is DisplayState.IDLE
    assert frame.multiplier == Decimal("1.00")


def test_running_then_crashed():
    fake = FakeClock()
    clock = MultiplierClock(clock=fake)
    clock.start()

    fake.now = 0.5
    frame = clock.tick()
    assert frame.state is DisplayState.RUNNING
    assert frame.multiplier == Decimal("1.50")

    clock.set_crash_point(170)
    fake.now = 0.9
    frame = clock.tick()
    assert frame.state is DisplayState.CRASHED
    # display is clamped to the crash point
    assert frame.multiplier == Decimal("1.70")

    fake.now = 5.0
    assert clock.tick() == frame


def test_stop_freezes_display():
    fake = FakeClock()
    clock = MultiplierClock(clock=fake)
    clock.start()
    fake.now = 0.25
    clock.tick()

    frame = clock.stop()

    assert frame.state is DisplayState.STOPPED
    assert frame.multiplier == Decimal("1.25")
    fake.now = 3.0
    assert clock.tick().multiplier == Decimal("1.25")


def test_restart_forgets_crash_point():
    fake = FakeClock()
    clock = MultiplierClock(clock=fake)
    clock.start()
    clock.set_crash_point(150)

    clock.start()

    assert clock.crash_point is None
    assert clock.running


def test_crash_point_must_be_revealed():
    clock = MultiplierClock(clock=FakeClock())
    with pytest.raises(ValueError):
        clock.set_crash_point(0)


def test_cash_out_value_is_truncated():
    fake = FakeClock()
    clock = MultiplierClock(clock=fake)
    clock.start()
    fake.now = 0.999
    assert clock.cash_out_value() == 199


def test_cash_out_value_after_crash():
    fake = FakeClock()
    clock = MultiplierClock(growth_period=1.0, clock=fake)
    clock.start()
    clock.set_crash_point(150)
    fake.now = 2.0

    with pytest.raises(TooLateCrashed):
        clock.cash_out_value()
    assert clock.state is DisplayState.CRASHED
    # still refused on later ticks
    with pytest.raises(TooLateCrashed):
        clock.cash_out_value()


@pytest.mark.parametrize("stopped", [False, True])
def test_cash_out_value_needs_running_display(stopped):
    clock = MultiplierClock(clock=FakeClock())
    if stopped:
        clock.start()
        clock.stop()

    with pytest.raises(ValueError):
        clock.cash_out_value()


async def test_run_until_crash():
    clock = MultiplierClock(clock=FakeClock(step=0.1))
    clock.start()
    clock.set_crash_point(130)
    frames = []

    final = await clock.run(on_tick=frames.append, interval=0)

    assert final.state is DisplayState.CRASHED
    assert final.multiplier == Decimal("1.30")
    assert all(f.state is DisplayState.RUNNING for f in frames[:-1])
    assert frames[-1] is final
