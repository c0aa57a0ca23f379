import random
from collections import Counter
from decimal import Decimal

import pytest
from hypothesis import given, strategies as st

from casino_engine.config import CrashSettings, DEFAULT_SYMBOLS, SlotSymbol
from casino_engine.errors import InternalGeneratorError
from casino_engine.generators import (
    draw_crash_point,
    draw_dice_roll,
    draw_roulette_spin,
    draw_slots_grid,
    weighted_choice,
)
from casino_engine.roulette import WHEEL_SEQUENCE

from conftest import ScriptedRandom


def test_slots_grid_is_three_by_three_of_known_symbols():
    grid = draw_slots_grid(random.Random(7), DEFAULT_SYMBOLS)
    names = {s.name for s in DEFAULT_SYMBOLS}
    assert len(grid) == 3
    assert all(len(row) == 3 for row in grid)
    assert all(cell in names for row in grid for cell in row)


def test_weighted_choice_follows_weights():
    symbols = (
        SlotSymbol(name="common", weight=3, multiplier=Decimal("1")),
        SlotSymbol(name="rare", weight=1, multiplier=Decimal("10")),
    )
    rng = random.Random(42)
    counts = Counter(weighted_choice(rng, symbols) for _ in range(20_000))
    share = counts["rare"] / 20_000
    assert 0.22 < share < 0.28


def test_weighted_choice_maps_draw_to_cumulative_bucket():
    symbols = (
        SlotSymbol(name="a", weight=2, multiplier=Decimal("1")),
        SlotSymbol(name="b", weight=0, multiplier=Decimal("1")),
        SlotSymbol(name="c", weight=2, multiplier=Decimal("1")),
    )
    assert weighted_choice(ScriptedRandom(floats=[0.1]), symbols) == "a"
    assert weighted_choice(ScriptedRandom(floats=[0.6]), symbols) == "c"


@pytest.mark.parametrize("symbols", [
    (),
    (SlotSymbol(name="a", weight=0, multiplier=Decimal("1")),),
])
def test_weighted_choice_rejects_undrawable_tables(symbols):
    with pytest.raises(InternalGeneratorError):
        weighted_choice(random.Random(0), symbols)


def test_dice_roll_range():
    rng = random.Random(3)
    rolls = {draw_dice_roll(rng) for _ in range(5000)}
    assert min(rolls) == 1
    assert max(rolls) == 100


def test_roulette_spin_covers_every_pocket():
    rng = random.Random(5)
    spins = {draw_roulette_spin(rng) for _ in range(5000)}
    assert spins == set(range(37))
    assert draw_roulette_spin(ScriptedRandom(ints=[WHEEL_SEQUENCE.index(17)])) == 17


def test_crash_point_inverse_power_law():
    settings = CrashSettings(instant_crash_probability=0.02)
    assert draw_crash_point(ScriptedRandom(floats=[0.5, 0.5]), settings) == Decimal("1.98")
    assert draw_crash_point(ScriptedRandom(floats=[0.75, 0.5]), settings) == Decimal("3.96")


def test_crash_point_clamps_low_and_high():
    settings = CrashSettings(instant_crash_probability=0.0, max_point=Decimal("50"))
    # 0.99 / 1 is below the floor
    assert draw_crash_point(ScriptedRandom(floats=[0.0, 0.9]), settings) == Decimal("1.00")
    assert draw_crash_point(ScriptedRandom(floats=[0.999999, 0.9]), settings) == Decimal("50.00")


def test_instant_crash_override_applies_after_main_draw():
    settings = CrashSettings(instant_crash_probability=0.02)
    assert draw_crash_point(ScriptedRandom(floats=[0.75, 0.01]), settings) == Decimal("1.00")


@given(u=st.floats(min_value=0.0, max_value=0.9999999), k=st.floats(min_value=0.1, max_value=5.0))
def test_crash_point_always_within_bounds(u, k):
    settings = CrashSettings(exponent=k, instant_crash_probability=0.0)
    point = draw_crash_point(ScriptedRandom(floats=[u, 0.5]), settings)
    assert Decimal("1.00") <= point <= settings.max_point
    assert point == point.quantize(Decimal("0.01"))
