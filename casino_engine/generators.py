# generators.py
"""
Weighted Outcome Generator.

Every function here is a pure function of its random source and the
configured parameters: no player state is read or written. The random
source is any object with the random.Random interface; production uses
secrets.SystemRandom.
"""

from __future__ import annotations

import secrets
from decimal import Decimal, ROUND_DOWN
from typing import Any, Sequence, Tuple

from casino_engine.config import CrashSettings, SlotSymbol
from casino_engine.errors import InternalGeneratorError
from casino_engine.roulette import WHEEL_SEQUENCE

GRID_SIZE = 3
MIN_CRASH_POINT = Decimal("1.00")

Grid = Tuple[Tuple[str, ...], ...]


def make_rng() -> Any:
    """Cryptographically secure source for all production draws."""
    return secrets.SystemRandom()


def weighted_choice(rng: Any, symbols: Sequence[SlotSymbol]) -> str:
    """
    Pick one symbol with probability weight / total weight.
    Weights need not sum to any particular total.
    """
    if not symbols:
        raise InternalGeneratorError("Empty symbol table")
    total = 0.0
    for s in symbols:
        if s.weight < 0:
            raise InternalGeneratorError(f"Negative weight for symbol {s.name}")
        total += s.weight
    if total <= 0:
        raise InternalGeneratorError("Symbol weights sum to zero")

    r = rng.random() * total
    cumulative = 0.0
    for s in symbols:
        cumulative += s.weight
        if r < cumulative:
            return s.name
    # Float rounding on the last bucket; fall back to the last weighted symbol
    for s in reversed(symbols):
        if s.weight > 0:
            return s.name
    raise InternalGeneratorError("No drawable symbol")


def draw_slots_grid(rng: Any, symbols: Sequence[SlotSymbol]) -> Grid:
    """Nine independent weighted draws laid out row by row."""
    return tuple(
        tuple(weighted_choice(rng, symbols) for _ in range(GRID_SIZE))
        for _ in range(GRID_SIZE)
    )


def draw_dice_roll(rng: Any) -> int:
    return rng.randint(1, 100)


def draw_roulette_spin(rng: Any) -> int:
    return WHEEL_SEQUENCE[rng.randrange(len(WHEEL_SEQUENCE))]


def draw_crash_point(rng: Any, settings: CrashSettings) -> Decimal:
    """
    Bounded inverse power-law:
        point = house_edge_factor / (1 - U**k), U in [0, 1)
    clamped to [1.00, max_point] and rounded down to cents. An independent
    instant-crash draw applied afterwards forces 1.00.
    """
    u = rng.random()
    if not 0.0 <= u < 1.0:
        raise InternalGeneratorError("Random source out of range")

    denominator = 1.0 - u ** settings.exponent
    if denominator <= 0:
        crash_point = settings.max_point
    else:
        raw = settings.house_edge_factor / denominator
        crash_point = Decimal(str(raw))

    crash_point = max(crash_point, MIN_CRASH_POINT)
    crash_point = min(crash_point, settings.max_point)
    crash_point = crash_point.quantize(Decimal("0.01"), rounding=ROUND_DOWN)

    if rng.random() < settings.instant_crash_probability:
        return MIN_CRASH_POINT
    return crash_point
