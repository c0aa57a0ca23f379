# engine.py
"""
Game Outcome & Settlement Engine – orchestration

Responsibilities:
- Strict bet lifecycle (RECEIVED -> VALIDATED -> DRAWN -> EVALUATED -> SETTLED,
  terminal REJECTED)
- One config snapshot per call, threaded through draw, evaluation and ledger
- Per-player serialization so concurrent bets cannot double-spend
- Two-phase crash flow (start reserves the stake, cashout settles it)
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Any, AsyncIterator, Callable, Iterable, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from casino_engine import db
from casino_engine.config import ConfigStore, CrashSettings, DiceSettings, GameKind, StakeLimits
from casino_engine.errors import (
    EngineError,
    InsufficientBalance,
    InternalGeneratorError,
    PlayerBanned,
    SessionExpired,
    StateError,
    ValidationError,
)
from casino_engine.evaluator import (
    CrashOutcome,
    CrashStartOutcome,
    DiceOutcome,
    Outcome,
    RouletteBet,
    RouletteOutcome,
    SlotsOutcome,
    evaluate_crash_cashout,
    evaluate_dice,
    evaluate_roulette,
    evaluate_slots,
    expired_crash_outcome,
)
from casino_engine.generators import (
    MIN_CRASH_POINT,
    draw_crash_point,
    draw_dice_roll,
    draw_roulette_spin,
    draw_slots_grid,
    make_rng,
)
from casino_engine.policy import WinRatePolicy
from casino_engine.roulette import BetType, covered_numbers
from casino_engine.sessions import CrashSession, CrashSessionStore
from casino_engine.utils import (
    crash_commitment,
    format_multiplier,
    generate_server_seed,
    generate_unique_id,
    safe_decimal,
    to_money,
)

logger = logging.getLogger("casino.engine")


# =========================
# BET LIFECYCLE
# =========================

class BetState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    DRAWN = "DRAWN"
    EVALUATED = "EVALUATED"
    SETTLED = "SETTLED"
    REJECTED = "REJECTED"


_TRANSITIONS = {
    BetState.RECEIVED: {BetState.VALIDATED, BetState.REJECTED},
    BetState.VALIDATED: {BetState.DRAWN, BetState.REJECTED},
    BetState.DRAWN: {BetState.EVALUATED, BetState.REJECTED},
    BetState.EVALUATED: {BetState.SETTLED, BetState.REJECTED},
    BetState.SETTLED: set(),
    BetState.REJECTED: set(),
}


@dataclass
class BetLifecycle:
    kind: GameKind
    round_id: str
    player_id: int
    state: BetState = BetState.RECEIVED
    reason: Optional[str] = None

    def advance(self, new_state: BetState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise StateError(f"Illegal transition {self.state.value} -> {new_state.value}")
        logger.debug(f"{self.kind.value} {self.round_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def reject(self, reason: str) -> None:
        if self.state in (BetState.SETTLED, BetState.REJECTED):
            return
        self.reason = reason
        self.advance(BetState.REJECTED)


# =========================
# ENGINE
# =========================

class CasinoEngine:
    """
    Entry point for every bet. Callers pass an AsyncSession and an already
    authenticated internal player id.
    """

    def __init__(
        self,
        config_store: Optional[ConfigStore] = None,
        sessions: Optional[CrashSessionStore] = None,
        rng_factory: Callable[[], Any] = make_rng,
    ) -> None:
        self.config_store = config_store or ConfigStore()
        self.sessions = sessions or CrashSessionStore()
        self._rng_factory = rng_factory
        self._player_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    # =====================================================
    # PLUMBING
    # =====================================================

    @asynccontextmanager
    async def _player_lock(self, player_id: int) -> AsyncIterator[None]:
        lock = self._player_locks.get(player_id)
        if lock is None:
            lock = asyncio.Lock()
            self._player_locks[player_id] = lock
        async with lock:
            yield

    @asynccontextmanager
    async def _bet(
        self,
        kind: GameKind,
        player_id: int,
        round_id: Optional[str] = None,
        state: BetState = BetState.RECEIVED,
    ) -> AsyncIterator[BetLifecycle]:
        ticket = BetLifecycle(kind, round_id or generate_unique_id(), player_id, state)
        try:
            yield ticket
        except EngineError as e:
            ticket.reject(type(e).__name__)
            logger.warning(f"{kind.value} {ticket.round_id} rejected for player {player_id}: {e}")
            raise

    def _guarded(self, ticket: BetLifecycle, next_state: BetState, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a draw/evaluation step; anything unexpected becomes a generic internal error."""
        try:
            result = fn(*args)
        except InternalGeneratorError:
            logger.exception(f"Generator misconfiguration in {ticket.kind.value} {ticket.round_id}")
            raise
        except Exception as e:
            logger.exception(f"Unexpected failure in {ticket.kind.value} {ticket.round_id}")
            raise InternalGeneratorError("Outcome generation failed") from e
        ticket.advance(next_state)
        return result

    async def _load_player(self, session: AsyncSession, player_id: int, stake: Decimal) -> db.Player:
        player = await db.get_player(session, player_id)
        if player.banned:
            raise PlayerBanned("Account is banned")
        if player.balance < stake:
            raise InsufficientBalance("Insufficient balance")
        return player

    async def _settle(
        self,
        session: AsyncSession,
        ticket: BetLifecycle,
        outcome: Outcome,
        config_version: int,
        reserved: bool = False,
    ) -> Decimal:
        balance = await db.settle(
            session,
            ticket.player_id,
            outcome.stake,
            outcome.payout,
            outcome.kind,
            multiplier=outcome.multiplier,
            is_win=outcome.is_win,
            round_id=outcome.round_id,
            detail=outcome.ledger_detail(),
            reserved=reserved,
            config_version=config_version,
            reference=f"{'win' if outcome.is_win else 'loss'} {format_multiplier(outcome.multiplier)}",
        )
        ticket.advance(BetState.SETTLED)
        return balance

    # =====================================================
    # VALIDATION
    # =====================================================

    @staticmethod
    def _validate_stake(stake: Any, limits: StakeLimits) -> Decimal:
        try:
            value = safe_decimal(stake)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if value != to_money(value):
            raise ValidationError("Stake has more than 2 decimal places")
        if value < limits.min_stake or value > limits.max_stake:
            raise ValidationError(f"Stake must be between {limits.min_stake} and {limits.max_stake}")
        return to_money(value)

    @staticmethod
    def _validate_target(target: Any, settings: DiceSettings) -> int:
        if isinstance(target, bool) or not isinstance(target, int):
            raise ValidationError("Target must be an integer")
        low, high = max(1, settings.min_target), min(99, settings.max_target)
        if not low <= target <= high:
            raise ValidationError(f"Target must be between {low} and {high}")
        return target

    @staticmethod
    def _validate_multiplier(value: Any, settings: CrashSettings, name: str) -> Decimal:
        try:
            mult = safe_decimal(value)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if mult != mult.quantize(Decimal("0.01"), rounding=ROUND_DOWN):
            raise ValidationError(f"{name} has more than 2 decimal places")
        if mult < MIN_CRASH_POINT or mult > settings.max_point:
            raise ValidationError(f"{name} must be between {MIN_CRASH_POINT} and {settings.max_point}")
        return mult

    def _validate_roulette(self, bets: Iterable[Mapping[str, Any]], limits: StakeLimits) -> List[RouletteBet]:
        raw = list(bets or [])
        if not raw:
            raise ValidationError("At least one roulette bet is required")
        if len(raw) > limits.max_roulette_bets:
            raise ValidationError(f"At most {limits.max_roulette_bets} roulette bets per spin")

        parsed = []
        for item in raw:
            try:
                bet_type = BetType(item.get("type"))
            except ValueError as e:
                raise ValidationError(f"Unknown roulette bet type: {item.get('type')!r}") from e
            numbers = tuple(item.get("numbers") or ())
            covered = covered_numbers(bet_type, numbers)
            stake = self._validate_stake(item.get("stake"), limits)
            parsed.append(RouletteBet(bet_type=bet_type, numbers=numbers, stake=stake, covered=covered))
        return parsed

    # =====================================================
    # INSTANT GAMES
    # =====================================================

    async def place_slots(self, session: AsyncSession, player_id: int, stake: Any) -> SlotsOutcome:
        config = self.config_store.current()
        policy = WinRatePolicy(config)

        async with self._bet(GameKind.SLOTS, player_id) as ticket:
            stake = self._validate_stake(stake, config.limits)
            ticket.advance(BetState.VALIDATED)

            async with self._player_lock(player_id):
                player = await self._load_player(session, player_id, stake)
                rng = self._rng_factory()
                grid = self._guarded(ticket, BetState.DRAWN, draw_slots_grid, rng, config.slots.symbols)
                outcome = self._guarded(
                    ticket, BetState.EVALUATED, evaluate_slots,
                    ticket.round_id, stake, grid, config.slots, policy, player.play_count, rng,
                )
                outcome.balance = await self._settle(session, ticket, outcome, config.version)

        return outcome

    async def place_dice(self, session: AsyncSession, player_id: int, stake: Any, target: Any) -> DiceOutcome:
        config = self.config_store.current()
        policy = WinRatePolicy(config)

        async with self._bet(GameKind.DICE, player_id) as ticket:
            stake = self._validate_stake(stake, config.limits)
            target = self._validate_target(target, config.dice)
            ticket.advance(BetState.VALIDATED)

            async with self._player_lock(player_id):
                player = await self._load_player(session, player_id, stake)
                rng = self._rng_factory()
                roll = self._guarded(ticket, BetState.DRAWN, draw_dice_roll, rng)
                outcome = self._guarded(
                    ticket, BetState.EVALUATED, evaluate_dice,
                    ticket.round_id, stake, target, roll, policy, player.play_count, rng,
                )
                outcome.balance = await self._settle(session, ticket, outcome, config.version)

        return outcome

    async def place_roulette(
        self,
        session: AsyncSession,
        player_id: int,
        bets: Iterable[Mapping[str, Any]],
    ) -> RouletteOutcome:
        config = self.config_store.current()
        policy = WinRatePolicy(config)

        async with self._bet(GameKind.ROULETTE, player_id) as ticket:
            parsed = self._validate_roulette(bets, config.limits)
            total_stake = sum((b.stake for b in parsed), Decimal("0.00"))
            ticket.advance(BetState.VALIDATED)

            async with self._player_lock(player_id):
                player = await self._load_player(session, player_id, total_stake)
                rng = self._rng_factory()
                spin = self._guarded(ticket, BetState.DRAWN, draw_roulette_spin, rng)
                outcome = self._guarded(
                    ticket, BetState.EVALUATED, evaluate_roulette,
                    ticket.round_id, spin, parsed, policy, player.play_count, rng,
                )
                outcome.balance = await self._settle(session, ticket, outcome, config.version)

        return outcome

    # =====================================================
    # CRASH (TWO-PHASE)
    # =====================================================

    async def start_crash(
        self,
        session: AsyncSession,
        player_id: int,
        stake: Any,
        auto_cashout: Any = None,
    ) -> CrashStartOutcome:
        """
        Draw the hidden crash point, debit the stake and open a session.
        The returned object never contains the crash point.
        """
        config = self.config_store.current()

        async with self._bet(GameKind.CRASH, player_id) as ticket:
            stake = self._validate_stake(stake, config.limits)
            auto = None
            if auto_cashout is not None:
                auto = self._validate_multiplier(auto_cashout, config.crash, "Auto cashout")
            ticket.advance(BetState.VALIDATED)

            async with self._player_lock(player_id):
                await self._load_player(session, player_id, stake)
                rng = self._rng_factory()
                crash_point = self._guarded(ticket, BetState.DRAWN, draw_crash_point, rng, config.crash)

                server_seed = generate_server_seed()
                commitment = crash_commitment(server_seed, ticket.round_id, crash_point)
                crash = CrashSession(
                    session_id=ticket.round_id,
                    player_id=player_id,
                    stake=stake,
                    crash_point=crash_point,
                    server_seed=server_seed,
                    commitment=commitment,
                    config_version=config.version,
                    ttl_seconds=config.crash.session_ttl_seconds,
                    auto_cashout=auto,
                )
                # Registered before the debit; dropped again if the debit fails
                await self.sessions.open(crash)
                try:
                    balance = await db.reserve_stake(
                        session,
                        player_id,
                        stake,
                        GameKind.CRASH,
                        round_id=ticket.round_id,
                        config_version=config.version,
                        reference="crash_reservation",
                    )
                except Exception:
                    await self.sessions.discard(crash.session_id)
                    raise

        logger.info(f"Crash session {ticket.round_id} opened for player {player_id}, stake={stake}")
        return CrashStartOutcome(
            round_id=ticket.round_id,
            stake=stake,
            commitment=commitment,
            auto_cashout=auto,
            balance=balance,
        )

    async def cashout_crash(
        self,
        session: AsyncSession,
        player_id: int,
        session_id: str,
        cashout_multiplier: Any,
    ) -> CrashOutcome:
        """
        Resolve an open session: win iff claimed multiplier <= crash point.
        The session is consumed exactly once; replays are rejected.
        """
        config = self.config_store.current()

        async with self._bet(GameKind.CRASH, player_id, round_id=session_id, state=BetState.DRAWN) as ticket:
            claimed = self._validate_multiplier(cashout_multiplier, config.crash, "Cashout multiplier")

            async with self._player_lock(player_id):
                crash = await self.sessions.claim(session_id, player_id)

                if crash.is_expired():
                    await self._settle_expired(session, crash)
                    raise SessionExpired("Crash session expired")

                outcome = evaluate_crash_cashout(
                    crash.session_id,
                    crash.stake,
                    crash.crash_point,
                    claimed,
                    crash.server_seed,
                    crash.commitment,
                )
                ticket.advance(BetState.EVALUATED)
                try:
                    outcome.balance = await self._settle(
                        session, ticket, outcome, crash.config_version, reserved=True,
                    )
                except Exception:
                    await self.sessions.restore(crash)
                    raise

        return outcome

    async def _settle_expired(self, session: AsyncSession, crash: CrashSession) -> CrashOutcome:
        outcome = expired_crash_outcome(
            crash.session_id,
            crash.stake,
            crash.crash_point,
            crash.server_seed,
            crash.commitment,
        )
        ticket = BetLifecycle(GameKind.CRASH, crash.session_id, crash.player_id, BetState.EVALUATED)
        try:
            outcome.balance = await self._settle(session, ticket, outcome, crash.config_version, reserved=True)
        except Exception:
            await self.sessions.restore(crash)
            raise
        logger.info(f"Crash session {crash.session_id} expired, settled as loss")
        return outcome

    async def reconcile_expired_crash(self, session: AsyncSession, now: Optional[float] = None) -> List[CrashOutcome]:
        """Settle every abandoned crash session as a loss."""
        settled = []
        expired = await self.sessions.pop_expired(now)
        for i, crash in enumerate(expired):
            try:
                async with self._player_lock(crash.player_id):
                    settled.append(await self._settle_expired(session, crash))
            except Exception:
                # Put back what was not reached; the failed one restores itself
                for pending in expired[i + 1:]:
                    await self.sessions.restore(pending)
                raise
        return settled
