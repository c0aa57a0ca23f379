# evaluator.py
"""
Payout Evaluator – one pure evaluation per game kind.

Input: a raw draw from generators.py, the validated bet and the
WinRatePolicy built from the call's config snapshot.
Output: one variant of the closed Outcome union. Nothing here touches
balances; settlement happens afterwards in db.settle.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional, Tuple, Union

from casino_engine.config import GameKind, SlotsSettings
from casino_engine.generators import Grid
from casino_engine.policy import WinRatePolicy
from casino_engine.roulette import PAYOUT_MULTIPLIERS, BetType, color_of, wins
from casino_engine.utils import payout_for, to_money, to_multiplier

NO_WIN = Decimal("0.0000")

Position = Tuple[int, int]

# Fixed paylines of the 3x3 grid
LINES: Tuple[Tuple[str, Tuple[Position, ...]], ...] = (
    ("row_top", ((0, 0), (0, 1), (0, 2))),
    ("row_middle", ((1, 0), (1, 1), (1, 2))),
    ("row_bottom", ((2, 0), (2, 1), (2, 2))),
    ("col_left", ((0, 0), (1, 0), (2, 0))),
    ("col_middle", ((0, 1), (1, 1), (2, 1))),
    ("col_right", ((0, 2), (1, 2), (2, 2))),
    ("diag_down", ((0, 0), (1, 1), (2, 2))),
    ("diag_up", ((2, 0), (1, 1), (0, 2))),
)
DIAGONALS = frozenset({"diag_down", "diag_up"})
MIDDLE_ROW = "row_middle"
ALL_POSITIONS = tuple((r, c) for r in range(3) for c in range(3))


def _num(value: Decimal) -> float:
    return float(value)


# =====================================================
# OUTCOME VARIANTS
# =====================================================

@dataclass
class WinningLine:
    line: str
    kind: str  # triple | pair | full_grid
    symbol: str
    multiplier: Decimal
    positions: Tuple[Position, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line": self.line,
            "kind": self.kind,
            "symbol": self.symbol,
            "multiplier": _num(self.multiplier),
            "positions": [list(p) for p in self.positions],
        }


@dataclass
class SlotsOutcome:
    kind: ClassVar[GameKind] = GameKind.SLOTS

    round_id: str
    stake: Decimal
    grid: Grid
    multiplier: Decimal
    payout: Decimal
    is_win: bool
    winning_lines: List[WinningLine] = field(default_factory=list)
    gates: List[str] = field(default_factory=list)
    balance: Optional[Decimal] = None

    def ledger_detail(self) -> Dict[str, Any]:
        return {
            "grid": [list(row) for row in self.grid],
            "lines": [
                {"line": w.line, "kind": w.kind, "symbol": w.symbol, "multiplier": str(w.multiplier)}
                for w in self.winning_lines
            ],
            "gates": list(self.gates),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "grid": [list(row) for row in self.grid],
            "multiplier": _num(self.multiplier),
            "payout": _num(self.payout),
            "is_win": self.is_win,
            "winning_lines": [w.to_dict() for w in self.winning_lines],
            "balance": _num(self.balance) if self.balance is not None else None,
        }


@dataclass
class DiceOutcome:
    kind: ClassVar[GameKind] = GameKind.DICE

    round_id: str
    stake: Decimal
    target: int
    roll: int
    multiplier: Decimal
    payout: Decimal
    is_win: bool
    win_multiplier: Decimal = NO_WIN
    gates: List[str] = field(default_factory=list)
    balance: Optional[Decimal] = None

    def ledger_detail(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "roll": self.roll,
            "win_multiplier": str(self.win_multiplier),
            "gates": list(self.gates),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "target": self.target,
            "roll": self.roll,
            "multiplier": _num(self.multiplier),
            "payout": _num(self.payout),
            "is_win": self.is_win,
            "balance": _num(self.balance) if self.balance is not None else None,
        }


@dataclass
class CrashStartOutcome:
    """Response for an opened crash session. Carries no crash point."""
    kind: ClassVar[GameKind] = GameKind.CRASH

    round_id: str
    stake: Decimal
    commitment: str
    auto_cashout: Optional[Decimal] = None
    balance: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.round_id,
            "stake": _num(self.stake),
            "auto_cashout": _num(self.auto_cashout) if self.auto_cashout is not None else None,
            "commitment": self.commitment,
            "balance": _num(self.balance) if self.balance is not None else None,
        }


@dataclass
class CrashOutcome:
    kind: ClassVar[GameKind] = GameKind.CRASH

    round_id: str
    stake: Decimal
    crash_point: Decimal
    cashout_multiplier: Optional[Decimal]
    multiplier: Decimal
    payout: Decimal
    is_win: bool
    server_seed: str
    commitment: str
    gates: List[str] = field(default_factory=list)
    balance: Optional[Decimal] = None

    def ledger_detail(self) -> Dict[str, Any]:
        return {
            "crash_point": str(self.crash_point),
            "cashout_multiplier": str(self.cashout_multiplier) if self.cashout_multiplier is not None else None,
            "server_seed": self.server_seed,
            "commitment": self.commitment,
            "gates": list(self.gates),
        }

    def to_dict(self) -> Dict[str, Any]:
        # Resolution reveals the point and the seed for verification
        return {
            "session_id": self.round_id,
            "crash_point": _num(self.crash_point),
            "cashout_multiplier": _num(self.cashout_multiplier) if self.cashout_multiplier is not None else None,
            "multiplier": _num(self.multiplier),
            "payout": _num(self.payout),
            "is_win": self.is_win,
            "server_seed": self.server_seed,
            "commitment": self.commitment,
            "balance": _num(self.balance) if self.balance is not None else None,
        }


@dataclass(frozen=True)
class RouletteBet:
    """A validated roulette sub-bet."""
    bet_type: BetType
    numbers: Tuple[int, ...]
    stake: Decimal
    covered: FrozenSet[int]


@dataclass
class RouletteBetResult:
    bet_type: BetType
    numbers: Tuple[int, ...]
    stake: Decimal
    won: bool
    multiplier: Decimal
    payout: Decimal
    gate: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.bet_type.value,
            "numbers": list(self.numbers),
            "stake": _num(self.stake),
            "won": self.won,
            "multiplier": _num(self.multiplier),
            "payout": _num(self.payout),
        }


@dataclass
class RouletteOutcome:
    kind: ClassVar[GameKind] = GameKind.ROULETTE

    round_id: str
    spin: int
    color: str
    stake: Decimal
    multiplier: Decimal
    payout: Decimal
    is_win: bool
    results: List[RouletteBetResult] = field(default_factory=list)
    balance: Optional[Decimal] = None

    @property
    def gates(self) -> List[str]:
        return [f"{i}:{r.gate}" for i, r in enumerate(self.results) if r.gate]

    def ledger_detail(self) -> Dict[str, Any]:
        return {
            "spin": self.spin,
            "color": self.color,
            "bets": [
                {
                    "type": r.bet_type.value,
                    "numbers": list(r.numbers),
                    "stake": str(r.stake),
                    "won": r.won,
                    "multiplier": str(r.multiplier),
                    "payout": str(r.payout),
                    "gate": r.gate,
                }
                for r in self.results
            ],
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "spin": self.spin,
            "color": self.color,
            "total_stake": _num(self.stake),
            "total_multiplier": _num(self.multiplier),
            "total_payout": _num(self.payout),
            "any_win": self.is_win,
            "results": [r.to_dict() for r in self.results],
            "balance": _num(self.balance) if self.balance is not None else None,
        }


# Outcomes that produce a settlement ledger row
Outcome = Union[SlotsOutcome, DiceOutcome, CrashOutcome, RouletteOutcome]


# =====================================================
# SLOTS
# =====================================================

def evaluate_slots(
    round_id: str,
    stake: Decimal,
    grid: Grid,
    settings: SlotsSettings,
    policy: WinRatePolicy,
    play_count: int,
    rng: Any,
) -> SlotsOutcome:
    """
    Score the 8 paylines independently; a full grid of one symbol is
    checked first and, when its gate passes, replaces line scoring.
    """
    gates: List[str] = []
    lines: List[WinningLine] = []

    distinct = {symbol for row in grid for symbol in row}
    if len(distinct) == 1:
        symbol = grid[0][0]
        if policy.passes(policy.full_grid_chance(play_count), rng):
            mult = settings.symbol(symbol).multiplier * settings.full_grid_bonus
            if policy.is_big_win(play_count, rng):
                mult *= policy.big_win_boost(play_count)
                gates.append("big_win")
            gates.append("full_grid")
            lines.append(WinningLine("full_grid", "full_grid", symbol, to_multiplier(mult), ALL_POSITIONS))
            return _slots_outcome(round_id, stake, grid, lines, gates)
        gates.append("full_grid_blocked")

    triple_chance = policy.adjusted_win_chance(GameKind.SLOTS, play_count)
    pair_chance = policy.pair_match_chance(play_count)

    for name, positions in LINES:
        cells = [grid[r][c] for r, c in positions]
        symbol, count = Counter(cells).most_common(1)[0]

        if count == 3:
            if not policy.passes(triple_chance, rng):
                gates.append(f"{name}:triple_blocked")
                continue
            mult = settings.symbol(symbol).multiplier
            if name in DIAGONALS:
                mult *= settings.diagonal_bonus
            if name == MIDDLE_ROW:
                mult *= settings.middle_row_bonus
            lines.append(WinningLine(name, "triple", symbol, to_multiplier(mult), positions))

        elif count == 2:
            if not policy.passes(pair_chance, rng):
                gates.append(f"{name}:pair_blocked")
                continue
            matched = tuple(p for p, s in zip(positions, cells) if s == symbol)
            lines.append(WinningLine(name, "pair", symbol, to_multiplier(settings.pair_multiplier), matched))

    return _slots_outcome(round_id, stake, grid, lines, gates)


def _slots_outcome(
    round_id: str,
    stake: Decimal,
    grid: Grid,
    lines: List[WinningLine],
    gates: List[str],
) -> SlotsOutcome:
    total = sum((w.multiplier for w in lines), NO_WIN)
    return SlotsOutcome(
        round_id=round_id,
        stake=stake,
        grid=grid,
        multiplier=total,
        payout=payout_for(stake, total),
        is_win=total > 0,
        winning_lines=lines,
        gates=gates,
    )


# =====================================================
# DICE
# =====================================================

def dice_win_multiplier(target: int, house_edge: float) -> Decimal:
    """(100 - house_edge) / target"""
    return to_multiplier((Decimal(100) - Decimal(str(house_edge))) / Decimal(target))


def evaluate_dice(
    round_id: str,
    stake: Decimal,
    target: int,
    roll: int,
    policy: WinRatePolicy,
    play_count: int,
    rng: Any,
) -> DiceOutcome:
    gates: List[str] = []
    win_multiplier = dice_win_multiplier(target, policy.effective_house_edge(GameKind.DICE, play_count))

    if roll <= target and policy.forced_loss(GameKind.DICE, play_count, rng):
        # Redraw strictly above target so the recorded roll agrees with the loss
        roll = rng.randint(target + 1, 100)
        gates.append("forced_loss")

    is_win = roll <= target
    multiplier = win_multiplier if is_win else NO_WIN
    return DiceOutcome(
        round_id=round_id,
        stake=stake,
        target=target,
        roll=roll,
        multiplier=multiplier,
        payout=payout_for(stake, multiplier),
        is_win=is_win,
        win_multiplier=win_multiplier,
        gates=gates,
    )


# =====================================================
# CRASH
# =====================================================

def evaluate_crash_cashout(
    round_id: str,
    stake: Decimal,
    crash_point: Decimal,
    cashout_multiplier: Decimal,
    server_seed: str,
    commitment: str,
) -> CrashOutcome:
    is_win = cashout_multiplier <= crash_point
    multiplier = to_multiplier(cashout_multiplier) if is_win else NO_WIN
    return CrashOutcome(
        round_id=round_id,
        stake=stake,
        crash_point=crash_point,
        cashout_multiplier=cashout_multiplier,
        multiplier=multiplier,
        payout=payout_for(stake, multiplier),
        is_win=is_win,
        server_seed=server_seed,
        commitment=commitment,
    )


def expired_crash_outcome(
    round_id: str,
    stake: Decimal,
    crash_point: Decimal,
    server_seed: str,
    commitment: str,
) -> CrashOutcome:
    """An abandoned session resolves as a loss."""
    return CrashOutcome(
        round_id=round_id,
        stake=stake,
        crash_point=crash_point,
        cashout_multiplier=None,
        multiplier=NO_WIN,
        payout=to_money(0),
        is_win=False,
        server_seed=server_seed,
        commitment=commitment,
        gates=["expired"],
    )


# =====================================================
# ROULETTE
# =====================================================

def evaluate_roulette(
    round_id: str,
    spin: int,
    bets: List[RouletteBet],
    policy: WinRatePolicy,
    play_count: int,
    rng: Any,
) -> RouletteOutcome:
    """One shared spin; every sub-bet scored and gated on its own."""
    results: List[RouletteBetResult] = []

    for bet in bets:
        won = wins(bet.covered, spin)
        gate = None
        if won and policy.forced_loss(GameKind.ROULETTE, play_count, rng):
            won, gate = False, "forced_loss"
        elif not won and policy.lucky_win(GameKind.ROULETTE, play_count, rng):
            won, gate = True, "lucky_win"

        multiplier = to_multiplier(PAYOUT_MULTIPLIERS[bet.bet_type]) if won else NO_WIN
        results.append(RouletteBetResult(
            bet_type=bet.bet_type,
            numbers=bet.numbers,
            stake=bet.stake,
            won=won,
            multiplier=multiplier,
            payout=payout_for(bet.stake, multiplier),
            gate=gate,
        ))

    total_stake = sum((r.stake for r in results), Decimal("0.00"))
    total_payout = sum((r.payout for r in results), Decimal("0.00"))
    total_multiplier = to_multiplier(total_payout / total_stake) if total_stake > 0 else NO_WIN

    return RouletteOutcome(
        round_id=round_id,
        spin=spin,
        color=color_of(spin),
        stake=total_stake,
        multiplier=total_multiplier,
        payout=total_payout,
        is_win=any(r.won for r in results),
        results=results,
    )
