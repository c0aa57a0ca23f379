# db.py
"""
Database Layer – Settlement Ledger

Responsibilities:
- Async database engine & session lifecycle
- Player account persistence
- Atomic settlement: one balance mutation + one immutable ledger row
- Crash stake reservations and administrative adjustments
- Versioned config snapshot persistence

All money is Decimal, quantized to cents. Every write path locks the
player row, validates, mutates, appends and commits as one unit. A
rejected request writes nothing; a failure after a write rolls the unit back.
"""

from __future__ import annotations

import os
import enum
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    String,
    DateTime,
    Integer,
    Enum,
    ForeignKey,
    func,
    Numeric,
    select,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.exc import IntegrityError

from casino_engine.config import EngineConfig, GameKind
from casino_engine.errors import InsufficientBalance, PlayerNotFound, ValidationError
from casino_engine.utils import ZERO, to_money, to_multiplier

logger = logging.getLogger("casino.db")

# =====================================================
# CONFIG
# =====================================================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./casino.db"
)

# Default starting balance for new players
STARTING_BALANCE = Decimal(os.getenv("STARTING_BALANCE", "1000.00"))

DB_ECHO = bool(os.getenv("DB_ECHO", False))


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# ENUMS
# =====================================================

class EntryType(str, enum.Enum):
    SETTLEMENT = "settlement"    # one per resolved bet
    RESERVATION = "reservation"  # crash stake debited at start
    ADJUSTMENT = "adjustment"    # administrative


# =====================================================
# MODELS
# =====================================================

class Player(Base):
    __tablename__ = "players"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_players_balance_non_negative"),
    )

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    # Identity issued by the external auth collaborator
    external_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=False,
    )

    # PRECISION: 18 digits total, 2 after decimal.
    balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=STARTING_BALANCE,
    )

    play_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # Affects reward multipliers elsewhere, never bet odds
    tier: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
    )

    banned: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    entries: Mapped[list["LedgerEntry"]] = relationship(
        back_populates="player",
        cascade="all, delete-orphan",
        lazy="raise",
        passive_deletes=True,
    )


class LedgerEntry(Base):
    """
    Immutable ledger record (append-only).
    `amount` is the signed balance change this row caused.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    player_id: Mapped[int] = mapped_column(
        ForeignKey("players.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    entry_type: Mapped[EntryType] = mapped_column(
        Enum(EntryType, name="entry_type"),
        nullable=False,
    )

    game_kind: Mapped[str | None] = mapped_column(
        String(16),
        nullable=True,
        index=True,
    )

    round_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )

    stake: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=ZERO)
    multiplier: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    payout: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=ZERO)
    is_win: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    balance_after: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    config_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Extra metadata (e.g. "win x2.50")
    reference: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
    )

    # Per-game breakdown: grid, roll, crash reveal, roulette sub-bets, gates
    detail: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    player: Mapped[Player] = relationship(back_populates="entries")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.entry_type.value,
            "game_kind": self.game_kind,
            "round_id": self.round_id,
            "stake": float(self.stake),
            "multiplier": float(self.multiplier),
            "payout": float(self.payout),
            "is_win": self.is_win,
            "amount": float(self.amount),
            "balance_after": float(self.balance_after),
            "config_version": self.config_version,
            "reference": self.reference,
            "detail": self.detail,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ConfigSnapshot(Base):
    """Every published EngineConfig version, kept for audit."""

    __tablename__ = "config_snapshots"

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )


# =====================================================
# ENGINE & SESSION
# =====================================================

engine = create_async_engine(
    DATABASE_URL,
    echo=DB_ECHO,
    future=True,
    # SSL is critical for Postgres in production
    connect_args={"ssl": "require"} if "postgresql" in DATABASE_URL else {},
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


# =====================================================
# INIT
# =====================================================

async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """
    Creates all tables. Safe to run on every startup.
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# =====================================================
# PLAYER HELPERS
# =====================================================

async def get_player(session: AsyncSession, player_id: int) -> Player:
    result = await session.execute(
        select(Player)
        .where(Player.id == player_id)
        .execution_options(populate_existing=True)
    )
    player = result.scalar_one_or_none()
    if player is None:
        raise PlayerNotFound(f"Player {player_id} not found")
    return player


async def get_player_by_external_id(session: AsyncSession, external_id: str) -> Optional[Player]:
    result = await session.execute(
        select(Player).where(Player.external_id == external_id)
    )
    return result.scalar_one_or_none()


async def get_or_create_player(
    session: AsyncSession,
    external_id: str,
) -> Player:
    """
    Fetches a player or creates one with the default balance.
    """
    player = await get_player_by_external_id(session, external_id)
    if player:
        return player

    new_player = Player(external_id=external_id, balance=STARTING_BALANCE, play_count=0, banned=False)
    session.add(new_player)

    try:
        await session.commit()
        await session.refresh(new_player)
        logger.info(f"Created player {external_id} with balance {STARTING_BALANCE}")
        return new_player
    except IntegrityError:
        # Handle race condition where player was created in parallel
        await session.rollback()
        return await get_or_create_player(session, external_id)


async def _lock_player(session: AsyncSession, player_id: int) -> Player:
    # Row lock on Postgres/MySQL; SQLite serializes writers on its own
    result = await session.execute(
        select(Player)
        .where(Player.id == player_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    player = result.scalar_one_or_none()
    if player is None:
        await _release(session)
        raise PlayerNotFound(f"Player {player_id} not found")
    return player


async def _release(session: AsyncSession) -> None:
    """End a transaction that wrote nothing, keeping loaded objects intact."""
    await session.commit()


async def _commit_or_rollback(session: AsyncSession) -> None:
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise


# =====================================================
# SETTLEMENT
# =====================================================

async def settle(
    session: AsyncSession,
    player_id: int,
    stake: Decimal,
    payout: Decimal,
    game_kind: GameKind,
    *,
    multiplier: Decimal,
    is_win: bool,
    round_id: str | None = None,
    detail: Dict[str, Any] | None = None,
    reserved: bool = False,
    config_version: int | None = None,
    reference: str | None = None,
) -> Decimal:
    """
    Apply `balance - stake + payout` and append one settlement row,
    atomically. With `reserved=True` the stake was already debited by
    reserve_stake, so only the payout is credited.

    Returns the new balance.
    """
    stake = to_money(stake)
    payout = to_money(payout)
    if stake < 0 or payout < 0:
        raise ValidationError("Stake and payout must be non-negative")

    player = await _lock_player(session, player_id)

    # Re-checked under the lock; validation-time checks can race
    delta = payout if reserved else payout - stake
    new_balance = player.balance + delta
    if (not reserved and player.balance < stake) or new_balance < 0:
        await _release(session)
        raise InsufficientBalance("Insufficient balance")

    try:
        player.balance = new_balance
        player.play_count += 1
        player.updated_at = datetime.now(timezone.utc)

        session.add(LedgerEntry(
            player_id=player.id,
            entry_type=EntryType.SETTLEMENT,
            game_kind=GameKind(game_kind).value,
            round_id=round_id,
            stake=stake,
            multiplier=to_multiplier(multiplier),
            payout=payout,
            is_win=is_win,
            amount=delta,
            balance_after=new_balance,
            config_version=config_version,
            reference=reference,
            detail=detail,
        ))
    except Exception:
        await session.rollback()
        raise

    await _commit_or_rollback(session)
    logger.info(
        f"Settled {GameKind(game_kind).value} round {round_id} for player {player_id}: "
        f"stake={stake} payout={payout} balance={new_balance}"
    )
    return new_balance


async def reserve_stake(
    session: AsyncSession,
    player_id: int,
    stake: Decimal,
    game_kind: GameKind,
    *,
    round_id: str | None = None,
    config_version: int | None = None,
    reference: str | None = None,
) -> Decimal:
    """
    Debit a stake now and settle it later (crash start).
    Returns the new balance.
    """
    stake = to_money(stake)
    if stake <= 0:
        raise ValidationError("Stake must be positive")

    player = await _lock_player(session, player_id)
    if player.balance < stake:
        await _release(session)
        raise InsufficientBalance("Insufficient balance")

    try:
        new_balance = player.balance - stake
        player.balance = new_balance
        player.updated_at = datetime.now(timezone.utc)

        session.add(LedgerEntry(
            player_id=player.id,
            entry_type=EntryType.RESERVATION,
            game_kind=GameKind(game_kind).value,
            round_id=round_id,
            stake=stake,
            amount=-stake,
            balance_after=new_balance,
            config_version=config_version,
            reference=reference,
        ))
    except Exception:
        await session.rollback()
        raise

    await _commit_or_rollback(session)
    return new_balance


async def adjust_balance(
    session: AsyncSession,
    player_id: int,
    amount: Decimal,
    reason: str,
) -> Decimal:
    """
    Administrative credit (positive) or debit (negative).
    Can never drive the balance below zero.
    """
    amount = to_money(amount)
    player = await _lock_player(session, player_id)
    new_balance = player.balance + amount
    if new_balance < 0:
        await _release(session)
        raise InsufficientBalance("Adjustment would make balance negative")

    try:
        player.balance = new_balance
        player.updated_at = datetime.now(timezone.utc)

        session.add(LedgerEntry(
            player_id=player.id,
            entry_type=EntryType.ADJUSTMENT,
            amount=amount,
            balance_after=new_balance,
            reference=reason[:128],
        ))
    except Exception:
        await session.rollback()
        raise

    await _commit_or_rollback(session)
    logger.info(f"Adjusted player {player_id} by {amount} ({reason}) -> {new_balance}")
    return new_balance


async def set_banned(session: AsyncSession, player_id: int, banned: bool) -> Player:
    player = await get_player(session, player_id)
    player.banned = banned
    await _commit_or_rollback(session)
    logger.warning(f"Player {player_id} banned={banned}")
    return player


async def list_ledger(
    session: AsyncSession,
    player_id: int,
    limit: int = 10,
    entry_type: EntryType | None = None,
) -> List[LedgerEntry]:
    """Most recent rows first."""
    stmt = select(LedgerEntry).where(LedgerEntry.player_id == player_id)
    if entry_type is not None:
        stmt = stmt.where(LedgerEntry.entry_type == entry_type)
    stmt = stmt.order_by(LedgerEntry.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


# =====================================================
# CONFIG SNAPSHOTS
# =====================================================

async def save_config_snapshot(session: AsyncSession, config: EngineConfig) -> None:
    session.add(ConfigSnapshot(
        version=config.version,
        payload=config.model_dump(mode="json"),
    ))
    await _commit_or_rollback(session)


async def load_latest_config(session: AsyncSession) -> Optional[EngineConfig]:
    result = await session.execute(
        select(ConfigSnapshot).order_by(ConfigSnapshot.version.desc()).limit(1)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    return EngineConfig.model_validate(row.payload)
