from decimal import Decimal

import pytest
from sqlalchemy.exc import InvalidRequestError

from casino_engine import db
from casino_engine.config import EngineConfig, GameKind, StakeLimits
from casino_engine.errors import InsufficientBalance, PlayerNotFound


async def _rows(session, player_id, entry_type=None):
    return await db.list_ledger(session, player_id, limit=100, entry_type=entry_type)


async def test_new_player_gets_starting_balance(session, player):
    assert player.balance == Decimal("1000.00")
    assert player.play_count == 0
    again = await db.get_or_create_player(session, "alice")
    assert again.id == player.id


async def test_settle_applies_stake_and_payout(session, player):
    balance = await db.settle(
        session, player.id, Decimal("100.00"), Decimal("170.00"), GameKind.DICE,
        multiplier=Decimal("1.7"), is_win=True, round_id="r1", detail={"roll": 30},
        config_version=3, reference="win x1.70",
    )
    assert balance == Decimal("1070.00")

    refreshed = await db.get_player(session, player.id)
    assert refreshed.balance == Decimal("1070.00")
    assert refreshed.play_count == 1

    [row] = await _rows(session, player.id)
    assert row.entry_type == db.EntryType.SETTLEMENT
    assert row.game_kind == "dice"
    assert row.amount == Decimal("70.00")
    assert row.balance_after == Decimal("1070.00")
    assert row.multiplier == Decimal("1.7000")
    assert row.config_version == 3
    assert row.detail == {"roll": 30}
    assert row.to_dict()["type"] == "settlement"


async def test_settle_losing_bet(session, player):
    balance = await db.settle(
        session, player.id, Decimal("25.50"), Decimal("0"), GameKind.SLOTS,
        multiplier=Decimal("0"), is_win=False,
    )
    assert balance == Decimal("974.50")


async def test_insufficient_balance_leaves_no_trace(session, player):
    player_id = player.id
    with pytest.raises(InsufficientBalance):
        await db.settle(
            session, player_id, Decimal("1000.01"), Decimal("0"), GameKind.SLOTS,
            multiplier=Decimal("0"), is_win=False,
        )
    refreshed = await db.get_player(session, player_id)
    assert refreshed.balance == Decimal("1000.00")
    assert refreshed.play_count == 0
    assert await _rows(session, player_id) == []
    # Rejection leaves the caller's loaded objects readable
    assert player.balance == Decimal("1000.00")


async def test_unknown_player(session):
    with pytest.raises(PlayerNotFound):
        await db.settle(
            session, 9999, Decimal("1"), Decimal("0"), GameKind.DICE,
            multiplier=Decimal("0"), is_win=False,
        )


async def test_reservation_then_reserved_settlement(session, player):
    balance = await db.reserve_stake(session, player.id, Decimal("100.00"), GameKind.CRASH, round_id="c1")
    assert balance == Decimal("900.00")

    balance = await db.settle(
        session, player.id, Decimal("100.00"), Decimal("210.00"), GameKind.CRASH,
        multiplier=Decimal("2.10"), is_win=True, round_id="c1", reserved=True,
    )
    assert balance == Decimal("1110.00")

    settlements = await _rows(session, player.id, db.EntryType.SETTLEMENT)
    reservations = await _rows(session, player.id, db.EntryType.RESERVATION)
    assert len(settlements) == 1 and len(reservations) == 1
    assert reservations[0].amount == Decimal("-100.00")
    assert settlements[0].amount == Decimal("210.00")
    # Net effect equals balance - stake + payout
    assert sum(r.amount for r in settlements + reservations) == Decimal("110.00")


async def test_reserve_more_than_balance(session, player):
    player_id = player.id
    with pytest.raises(InsufficientBalance):
        await db.reserve_stake(session, player_id, Decimal("5000"), GameKind.CRASH)
    assert await _rows(session, player_id) == []
    assert player.id == player_id


async def test_adjust_balance_never_negative(session, player):
    player_id = player.id
    assert await db.adjust_balance(session, player_id, Decimal("-400"), "chargeback") == Decimal("600.00")
    with pytest.raises(InsufficientBalance):
        await db.adjust_balance(session, player_id, Decimal("-600.01"), "too much")
    refreshed = await db.get_player(session, player_id)
    assert refreshed.balance == Decimal("600.00")
    [row] = await _rows(session, player_id)
    assert row.entry_type == db.EntryType.ADJUSTMENT
    assert row.reference == "chargeback"


async def test_list_ledger_newest_first_with_limit(session, player):
    for i in range(5):
        await db.settle(
            session, player.id, Decimal("1"), Decimal("0"), GameKind.DICE,
            multiplier=Decimal("0"), is_win=False, round_id=f"r{i}",
        )
    rows = await db.list_ledger(session, player.id, limit=3)
    assert [r.round_id for r in rows] == ["r4", "r3", "r2"]


async def test_blackjack_settles_through_same_primitive(session, player):
    balance = await db.settle(
        session, player.id, Decimal("20"), Decimal("50"), GameKind.BLACKJACK,
        multiplier=Decimal("2.5"), is_win=True, round_id="bj1",
    )
    assert balance == Decimal("1030.00")
    [row] = await _rows(session, player.id)
    assert row.game_kind == "blackjack"


async def test_ban_flag(session, player):
    updated = await db.set_banned(session, player.id, True)
    assert updated.banned is True


async def test_config_snapshots_round_trip(session):
    assert await db.load_latest_config(session) is None
    await db.save_config_snapshot(session, EngineConfig())
    newer = EngineConfig(version=2, limits=StakeLimits(max_stake=Decimal("50.00")))
    await db.save_config_snapshot(session, newer)

    loaded = await db.load_latest_config(session)
    assert loaded.version == 2
    assert loaded.limits.max_stake == Decimal("50.00")
    assert loaded.model_dump() == newer.model_dump()


async def test_player_entries_are_never_lazy_loaded(session, player):
    # Ledger rows are read through list_ledger only
    with pytest.raises(InvalidRequestError):
        player.entries
