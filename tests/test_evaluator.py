import random
from decimal import Decimal

from hypothesis import given, strategies as st

from casino_engine.config import (
    DiceSettings,
    GameKind,
    GamePolicy,
    PolicyParameters,
    PolicyStage,
    SlotsSettings,
)
from casino_engine.evaluator import (
    RouletteBet,
    evaluate_crash_cashout,
    evaluate_dice,
    evaluate_roulette,
    evaluate_slots,
    expired_crash_outcome,
)
from casino_engine.policy import WinRatePolicy
from casino_engine.roulette import BetType, covered_numbers

from conftest import ScriptedRandom, flat_config

ALWAYS = SlotsSettings(triple_win_chance=100, pair_win_chance=100, full_grid_chance=100)


def _slots(grid, settings=ALWAYS, stake="10.00", policies=None):
    config = flat_config(slots=settings) if policies is None else flat_config(slots=settings, policies=policies)
    return evaluate_slots("r1", Decimal(stake), grid, config.slots, WinRatePolicy(config), 0, random.Random(0))


def _gated(kind, **params):
    policies = {k: GamePolicy() for k in GameKind}
    policies[kind] = GamePolicy(stages=(PolicyStage(parameters=PolicyParameters(**params)),))
    return policies


# =====================================================
# SLOTS
# =====================================================

def test_top_row_triple_pays_symbol_base():
    grid = (
        ("bell", "bell", "bell"),
        ("cherry", "lemon", "orange"),
        ("grape", "seven", "diamond"),
    )
    outcome = _slots(grid)
    assert [w.line for w in outcome.winning_lines] == ["row_top"]
    assert outcome.multiplier == Decimal("5")
    assert outcome.payout == Decimal("50.00")
    assert outcome.is_win


def test_middle_row_bonus():
    grid = (
        ("cherry", "lemon", "orange"),
        ("seven", "seven", "seven"),
        ("grape", "bell", "diamond"),
    )
    outcome = _slots(grid)
    assert outcome.multiplier == Decimal("30.0000")
    assert outcome.winning_lines[0].line == "row_middle"


def test_diagonal_bonus():
    grid = (
        ("star", "cherry", "lemon"),
        ("orange", "star", "grape"),
        ("bell", "diamond", "star"),
    )
    outcome = _slots(grid)
    assert outcome.multiplier == Decimal("375.0000")
    assert outcome.winning_lines[0].line == "diag_down"


def test_pair_pays_flat_multiplier_on_matching_cells():
    grid = (
        ("cherry", "cherry", "lemon"),
        ("orange", "grape", "bell"),
        ("diamond", "seven", "star"),
    )
    outcome = _slots(grid)
    line = outcome.winning_lines[0]
    assert line.kind == "pair"
    assert line.positions == ((0, 0), (0, 1))
    assert outcome.multiplier == Decimal("0.4000")
    assert outcome.payout == Decimal("4.00")


def test_blocked_pair_is_a_recorded_loss():
    grid = (
        ("cherry", "cherry", "lemon"),
        ("orange", "grape", "bell"),
        ("diamond", "seven", "star"),
    )
    outcome = _slots(grid, settings=SlotsSettings(pair_win_chance=0))
    assert not outcome.is_win
    assert outcome.multiplier == 0
    assert outcome.payout == Decimal("0.00")
    assert "row_top:pair_blocked" in outcome.gates


def test_full_grid_jackpot_multiplier():
    grid = (("jackpot",) * 3,) * 3
    outcome = _slots(grid, stake="1.00")
    assert outcome.multiplier == Decimal("20000.0000")
    assert [w.kind for w in outcome.winning_lines] == ["full_grid"]
    assert outcome.payout == Decimal("20000.00")


def test_full_grid_big_win_boost():
    grid = (("jackpot",) * 3,) * 3
    policies = _gated(GameKind.SLOTS, big_win_probability=1.0, big_win_boost=Decimal("2"))
    outcome = _slots(grid, stake="1.00", policies=policies)
    assert outcome.multiplier == Decimal("40000.0000")
    assert "big_win" in outcome.gates


def test_blocked_full_grid_falls_back_to_lines():
    grid = (("jackpot",) * 3,) * 3
    settings = SlotsSettings(triple_win_chance=100, full_grid_chance=0)
    outcome = _slots(grid, settings=settings, stake="1.00")
    assert len(outcome.winning_lines) == 8
    # 3 rows (middle x1.2) + 3 columns + 2 diagonals (x1.5)
    assert outcome.multiplier == Decimal("9200.0000")
    full = _slots(grid, stake="1.00")
    assert full.multiplier >= max(w.multiplier for w in outcome.winning_lines)


@given(seed=st.integers(min_value=0, max_value=10**6))
def test_slots_total_is_sum_of_lines(seed):
    from casino_engine.generators import draw_slots_grid

    config = flat_config(slots=SlotsSettings(triple_win_chance=50, pair_win_chance=50))
    rng = random.Random(seed)
    grid = draw_slots_grid(rng, config.slots.symbols)
    outcome = evaluate_slots("r", Decimal("3.00"), grid, config.slots, WinRatePolicy(config), 0, rng)
    assert outcome.multiplier == sum((w.multiplier for w in outcome.winning_lines), Decimal("0"))
    assert outcome.is_win == (outcome.multiplier > 0)
    assert abs(outcome.payout - outcome.stake * outcome.multiplier) < Decimal("0.01")


# =====================================================
# DICE
# =====================================================

def _dice_policy(house_edge=15, **params):
    config = flat_config(dice=DiceSettings(house_edge=house_edge), policies=_gated(GameKind.DICE, **params))
    return WinRatePolicy(config)


def test_dice_scenario_win():
    outcome = evaluate_dice("d", Decimal("100"), 50, 30, _dice_policy(), 0, random.Random(0))
    assert outcome.is_win
    assert outcome.multiplier == Decimal("1.7")
    assert outcome.payout == Decimal("170.00")


def test_dice_roll_above_target_loses():
    outcome = evaluate_dice("d", Decimal("100"), 50, 51, _dice_policy(), 0, random.Random(0))
    assert not outcome.is_win
    assert outcome.multiplier == 0
    assert outcome.payout == 0


def test_dice_forced_loss_redraws_above_target():
    rng = ScriptedRandom(ints=[77])
    outcome = evaluate_dice("d", Decimal("100"), 50, 30, _dice_policy(forced_loss_probability=1.0), 0, rng)
    assert outcome.roll == 77
    assert not outcome.is_win
    assert outcome.multiplier == 0
    assert outcome.payout == 0
    assert outcome.gates == ["forced_loss"]


@given(
    roll=st.integers(min_value=1, max_value=100),
    target=st.integers(min_value=1, max_value=99),
    edge=st.floats(min_value=0, max_value=50),
    seed=st.integers(min_value=0, max_value=1000),
)
def test_dice_win_iff_roll_under_target(roll, target, edge, seed):
    outcome = evaluate_dice(
        "d", Decimal("10"), target, roll, _dice_policy(edge, forced_loss_probability=0.3), 0, random.Random(seed),
    )
    assert outcome.is_win == (outcome.roll <= target)
    if not outcome.is_win:
        assert outcome.payout == 0
    assert abs(outcome.payout - outcome.stake * outcome.multiplier) < Decimal("0.01")


# =====================================================
# CRASH
# =====================================================

def test_crash_cashout_below_point_wins():
    outcome = evaluate_crash_cashout("c", Decimal("100"), Decimal("3.45"), Decimal("2.10"), "seed", "commit")
    assert outcome.is_win
    assert outcome.payout == Decimal("210.00")


def test_crash_cashout_above_point_loses():
    outcome = evaluate_crash_cashout("c", Decimal("100"), Decimal("1.20"), Decimal("1.50"), "seed", "commit")
    assert not outcome.is_win
    assert outcome.multiplier == 0
    assert outcome.payout == 0


def test_crash_cashout_exactly_at_point_wins():
    outcome = evaluate_crash_cashout("c", Decimal("10"), Decimal("2.00"), Decimal("2.00"), "seed", "commit")
    assert outcome.is_win
    assert outcome.payout == Decimal("20.00")


def test_expired_crash_is_loss():
    outcome = expired_crash_outcome("c", Decimal("10"), Decimal("5.00"), "seed", "commit")
    assert not outcome.is_win
    assert outcome.payout == 0
    assert outcome.gates == ["expired"]


# =====================================================
# ROULETTE
# =====================================================

def _bet(bet_type, numbers, stake):
    return RouletteBet(bet_type, tuple(numbers), Decimal(stake), covered_numbers(bet_type, numbers))


def test_red_loses_on_seventeen_but_straight_wins():
    policy = WinRatePolicy(flat_config())
    bets = [_bet(BetType.RED, [], "50"), _bet(BetType.STRAIGHT, [17], "10")]
    outcome = evaluate_roulette("r", 17, bets, policy, 0, random.Random(0))
    red, straight = outcome.results
    assert outcome.color == "black"
    assert not red.won and red.payout == 0
    assert straight.won and straight.payout == Decimal("360.00")
    assert outcome.stake == Decimal("60")
    assert outcome.payout == red.payout + straight.payout
    assert outcome.multiplier == Decimal("6.0000")
    assert outcome.is_win


def test_roulette_gates_flip_results():
    lucky = WinRatePolicy(flat_config(policies=_gated(GameKind.ROULETTE, lucky_win_probability=1.0)))
    outcome = evaluate_roulette("r", 17, [_bet(BetType.RED, [], "50")], lucky, 0, random.Random(0))
    assert outcome.results[0].won and outcome.results[0].gate == "lucky_win"
    assert outcome.payout == Decimal("100.00")

    forced = WinRatePolicy(flat_config(policies=_gated(GameKind.ROULETTE, forced_loss_probability=1.0)))
    outcome = evaluate_roulette("r", 17, [_bet(BetType.BLACK, [], "50")], forced, 0, random.Random(0))
    assert not outcome.is_win
    assert outcome.gates == ["0:forced_loss"]
    assert outcome.ledger_detail()["bets"][0]["gate"] == "forced_loss"
