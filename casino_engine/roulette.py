# roulette.py
"""
European roulette table rules.

Wheel ordering is kept for presentation only; the generator treats every
pocket as equiprobable. Bet types are validated against the table layout
(rows of three: 1-2-3, 4-5-6, ..., 34-35-36) before any spin is drawn.
"""

from __future__ import annotations

import enum
from decimal import Decimal
from typing import FrozenSet, Iterable, Tuple

from casino_engine.errors import ValidationError

WHEEL_SEQUENCE: Tuple[int, ...] = (
    0, 32, 15, 19, 4, 21, 2, 25, 17, 34, 6, 27, 13, 36, 11, 30, 8, 23, 10,
    5, 24, 16, 33, 1, 20, 14, 31, 9, 22, 18, 29, 7, 28, 12, 35, 3, 26,
)

RED_NUMBERS: FrozenSet[int] = frozenset({
    1, 3, 5, 7, 9, 12, 14, 16, 18, 19, 21, 23, 25, 27, 30, 32, 34, 36,
})


class BetType(str, enum.Enum):
    STRAIGHT = "straight"
    SPLIT = "split"
    STREET = "street"
    CORNER = "corner"
    LINE = "line"
    DOZEN = "dozen"
    COLUMN = "column"
    EVEN = "even"
    ODD = "odd"
    RED = "red"
    BLACK = "black"
    LOW = "low"
    HIGH = "high"


# Total return on a win, stake included (35:1 -> 36)
PAYOUT_MULTIPLIERS = {
    BetType.STRAIGHT: Decimal("36"),
    BetType.SPLIT: Decimal("18"),
    BetType.STREET: Decimal("12"),
    BetType.CORNER: Decimal("9"),
    BetType.LINE: Decimal("6"),
    BetType.DOZEN: Decimal("3"),
    BetType.COLUMN: Decimal("3"),
    BetType.EVEN: Decimal("2"),
    BetType.ODD: Decimal("2"),
    BetType.RED: Decimal("2"),
    BetType.BLACK: Decimal("2"),
    BetType.LOW: Decimal("2"),
    BetType.HIGH: Decimal("2"),
}

DOZENS = tuple(frozenset(range(start, start + 12)) for start in (1, 13, 25))
COLUMNS = tuple(frozenset(range(first, 37, 3)) for first in (1, 2, 3))

OUTSIDE_SETS = {
    BetType.EVEN: frozenset(n for n in range(1, 37) if n % 2 == 0),
    BetType.ODD: frozenset(n for n in range(1, 37) if n % 2 == 1),
    BetType.RED: RED_NUMBERS,
    BetType.BLACK: frozenset(range(1, 37)) - RED_NUMBERS,
    BetType.LOW: frozenset(range(1, 19)),
    BetType.HIGH: frozenset(range(19, 37)),
}


def color_of(number: int) -> str:
    if number == 0:
        return "green"
    return "red" if number in RED_NUMBERS else "black"


def _row(n: int) -> int:
    return (n - 1) // 3


def _is_split(a: int, b: int) -> bool:
    lo, hi = sorted((a, b))
    if lo == 0:
        return hi in (1, 2, 3)
    if hi - lo == 3:
        return True
    return hi - lo == 1 and _row(lo) == _row(hi)


def _is_street(numbers: FrozenSet[int]) -> bool:
    if numbers in (frozenset({0, 1, 2}), frozenset({0, 2, 3})):
        return True
    low = min(numbers)
    return low >= 1 and low % 3 == 1 and numbers == frozenset({low, low + 1, low + 2})


def _is_corner(numbers: FrozenSet[int]) -> bool:
    if numbers == frozenset({0, 1, 2, 3}):
        return True
    low = min(numbers)
    if low < 1 or low % 3 == 0 or low > 32:
        return False
    return numbers == frozenset({low, low + 1, low + 3, low + 4})


def _is_line(numbers: FrozenSet[int]) -> bool:
    low = min(numbers)
    return low >= 1 and low % 3 == 1 and low <= 31 and numbers == frozenset(range(low, low + 6))


_INSIDE_SHAPES = {
    BetType.STRAIGHT: (1, lambda ns: True),
    BetType.SPLIT: (2, lambda ns: _is_split(*ns)),
    BetType.STREET: (3, _is_street),
    BetType.CORNER: (4, _is_corner),
    BetType.LINE: (6, _is_line),
}


def covered_numbers(bet_type: BetType, numbers: Iterable[int]) -> FrozenSet[int]:
    """
    Validate a sub-bet's numbers against the layout and return the set of
    pockets it covers. Outside bets (parity/colour/range) accept an empty
    list or their own full set.
    """
    chosen = list(numbers)
    if any(not isinstance(n, int) or isinstance(n, bool) or n < 0 or n > 36 for n in chosen):
        raise ValidationError("Roulette numbers must be integers in 0-36")
    picked = frozenset(chosen)
    if len(picked) != len(chosen):
        raise ValidationError("Duplicate roulette numbers")

    if bet_type in _INSIDE_SHAPES:
        size, shape_ok = _INSIDE_SHAPES[bet_type]
        if len(picked) != size or not shape_ok(sorted(picked) if bet_type == BetType.SPLIT else picked):
            raise ValidationError(f"Numbers {sorted(picked)} do not form a valid {bet_type.value} bet")
        return picked

    if bet_type == BetType.DOZEN:
        return _pick_group(picked, DOZENS, bet_type)
    if bet_type == BetType.COLUMN:
        return _pick_group(picked, COLUMNS, bet_type)

    outside = OUTSIDE_SETS[bet_type]
    if picked and picked != outside:
        raise ValidationError(f"A {bet_type.value} bet does not take explicit numbers")
    return outside


def _pick_group(picked: FrozenSet[int], groups, bet_type: BetType) -> FrozenSet[int]:
    # Either the full group or any single member selects the group
    for group in groups:
        if picked == group or (len(picked) == 1 and picked <= group):
            return group
    raise ValidationError(f"Numbers {sorted(picked)} do not select a {bet_type.value}")


def wins(covered: FrozenSet[int], spin: int) -> bool:
    return spin in covered
