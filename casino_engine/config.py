# config.py
"""
Versioned game configuration.

The engine never reads ambient mutable tables. Each bet call takes one
EngineConfig snapshot from the ConfigStore and threads it through the
draw, the evaluation and the ledger row (which records the version).
Administrative updates build a new validated snapshot and swap it in.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger("casino.config")


class GameKind(str, enum.Enum):
    SLOTS = "slots"
    DICE = "dice"
    CRASH = "crash"
    ROULETTE = "roulette"
    # Settled through the ledger by the external blackjack state machine
    BLACKJACK = "blackjack"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# =====================================================
# PER-GAME SETTINGS
# =====================================================

class StakeLimits(_Frozen):
    min_stake: Decimal = Field(Decimal("1.00"), gt=0)
    max_stake: Decimal = Field(Decimal("10000.00"), gt=0)
    max_roulette_bets: int = Field(50, ge=1)

    @model_validator(mode="after")
    def _ordered(self) -> "StakeLimits":
        if self.min_stake > self.max_stake:
            raise ValueError("min_stake must not exceed max_stake")
        return self


class SlotSymbol(_Frozen):
    name: str = Field(..., min_length=1)
    weight: float = Field(..., ge=0)
    multiplier: Decimal = Field(..., gt=0)


DEFAULT_SYMBOLS: Tuple[SlotSymbol, ...] = (
    SlotSymbol(name="cherry", weight=30, multiplier=Decimal("1.2")),
    SlotSymbol(name="lemon", weight=25, multiplier=Decimal("1.5")),
    SlotSymbol(name="orange", weight=20, multiplier=Decimal("2")),
    SlotSymbol(name="grape", weight=15, multiplier=Decimal("3")),
    SlotSymbol(name="bell", weight=10, multiplier=Decimal("5")),
    SlotSymbol(name="diamond", weight=6, multiplier=Decimal("10")),
    SlotSymbol(name="seven", weight=4, multiplier=Decimal("25")),
    SlotSymbol(name="clover", weight=3, multiplier=Decimal("75")),
    SlotSymbol(name="star", weight=2, multiplier=Decimal("250")),
    SlotSymbol(name="jackpot", weight=1, multiplier=Decimal("1000")),
)


class SlotsSettings(_Frozen):
    symbols: Tuple[SlotSymbol, ...] = DEFAULT_SYMBOLS
    pair_multiplier: Decimal = Field(Decimal("0.4"), ge=0)
    diagonal_bonus: Decimal = Field(Decimal("1.5"), ge=1)
    middle_row_bonus: Decimal = Field(Decimal("1.2"), ge=1)
    full_grid_bonus: Decimal = Field(Decimal("20"), ge=1)
    # Percent chances in [0, 100], shifted per player by the policy curve
    triple_win_chance: float = Field(70.0, ge=0, le=100)
    pair_win_chance: float = Field(25.0, ge=0, le=100)
    full_grid_chance: float = Field(50.0, ge=0, le=100)

    @field_validator("symbols")
    @classmethod
    def _unique_names(cls, v: Tuple[SlotSymbol, ...]) -> Tuple[SlotSymbol, ...]:
        names = [s.name for s in v]
        if len(names) != len(set(names)):
            raise ValueError("slot symbol names must be unique")
        return v

    def symbol(self, name: str) -> SlotSymbol:
        for s in self.symbols:
            if s.name == name:
                return s
        raise KeyError(name)


class DiceSettings(_Frozen):
    # Percent of the fair multiplier kept by the house
    house_edge: float = Field(1.0, ge=0, lt=100)
    min_target: int = Field(1, ge=1, le=99)
    max_target: int = Field(99, ge=1, le=99)


class CrashSettings(_Frozen):
    house_edge_factor: float = Field(0.99, gt=0, le=1)
    exponent: float = Field(1.0, gt=0)
    max_point: Decimal = Field(Decimal("1000.00"), ge=1)
    instant_crash_probability: float = Field(0.02, ge=0, le=1)
    session_ttl_seconds: float = Field(300.0, gt=0)


# =====================================================
# WIN-RATE POLICY CURVES
# =====================================================

class PolicyParameters(_Frozen):
    # Percentage points added to a game's base win chance
    base_win_chance_adjustment: float = Field(0.0, ge=-100, le=100)
    forced_loss_probability: float = Field(0.0, ge=0, le=1)
    lucky_win_probability: float = Field(0.0, ge=0, le=1)
    big_win_probability: float = Field(0.0, ge=0, le=1)
    big_win_boost: Decimal = Field(Decimal("1"), ge=1)


class PolicyStage(_Frozen):
    # Exclusive upper bound on play count; None covers everything after
    max_play_count: Optional[int] = Field(None, ge=1)
    parameters: PolicyParameters = PolicyParameters()


class GamePolicy(_Frozen):
    stages: Tuple[PolicyStage, ...] = (PolicyStage(),)

    @field_validator("stages")
    @classmethod
    def _well_formed(cls, v: Tuple[PolicyStage, ...]) -> Tuple[PolicyStage, ...]:
        if not v:
            raise ValueError("policy needs at least one stage")
        if v[-1].max_play_count is not None:
            raise ValueError("last policy stage must be open-ended")
        bounds = [s.max_play_count for s in v[:-1]]
        if any(b is None for b in bounds) or bounds != sorted(set(bounds)):
            raise ValueError("stage bounds must be strictly increasing")
        return v


def _onboarding_curve(
    early: PolicyParameters,
    settling: PolicyParameters,
    baseline: PolicyParameters,
) -> GamePolicy:
    return GamePolicy(stages=(
        PolicyStage(max_play_count=10, parameters=early),
        PolicyStage(max_play_count=50, parameters=settling),
        PolicyStage(max_play_count=None, parameters=baseline),
    ))


DEFAULT_POLICIES: Dict[GameKind, GamePolicy] = {
    GameKind.SLOTS: _onboarding_curve(
        PolicyParameters(base_win_chance_adjustment=15, big_win_probability=0.05, big_win_boost=Decimal("2")),
        PolicyParameters(base_win_chance_adjustment=5, big_win_probability=0.02, big_win_boost=Decimal("1.5")),
        PolicyParameters(big_win_probability=0.01, big_win_boost=Decimal("1.5")),
    ),
    GameKind.DICE: _onboarding_curve(
        PolicyParameters(base_win_chance_adjustment=1),
        PolicyParameters(),
        PolicyParameters(forced_loss_probability=0.02),
    ),
    GameKind.ROULETTE: _onboarding_curve(
        PolicyParameters(lucky_win_probability=0.05),
        PolicyParameters(lucky_win_probability=0.02),
        PolicyParameters(forced_loss_probability=0.02),
    ),
    GameKind.CRASH: GamePolicy(),
}


# =====================================================
# SNAPSHOT
# =====================================================

class EngineConfig(_Frozen):
    version: int = Field(1, ge=1)
    limits: StakeLimits = StakeLimits()
    slots: SlotsSettings = SlotsSettings()
    dice: DiceSettings = DiceSettings()
    crash: CrashSettings = CrashSettings()
    policies: Dict[GameKind, GamePolicy] = Field(default_factory=lambda: dict(DEFAULT_POLICIES))

    def policy_for(self, kind: GameKind) -> GamePolicy:
        return self.policies.get(kind) or GamePolicy()


UPDATABLE_SECTIONS = ("limits", "slots", "dice", "crash", "policies")


class ConfigStore:
    """
    Holder of the current EngineConfig snapshot.
    Readers get an immutable object; writers replace it wholesale.
    """

    def __init__(self, initial: Optional[EngineConfig] = None) -> None:
        self._lock = asyncio.Lock()
        self._current = initial or EngineConfig()

    def current(self) -> EngineConfig:
        return self._current

    def replace(self, snapshot: EngineConfig) -> None:
        """Install a snapshot loaded from storage."""
        self._current = snapshot
        logger.info(f"Config snapshot v{snapshot.version} installed")

    async def update(self, section: str, values: Dict[str, Any]) -> EngineConfig:
        """
        Merge `values` into one section and publish version + 1.
        Raises ValueError (pydantic.ValidationError) if the result is invalid.
        """
        if section not in UPDATABLE_SECTIONS:
            raise ValueError(f"Unknown config section: {section}")

        async with self._lock:
            current = self._current
            data = current.model_dump(mode="python")
            if section == "policies":
                merged = dict(data["policies"])
                merged.update({GameKind(k): v for k, v in values.items()})
            else:
                merged = {**data[section], **values}
            data[section] = merged
            data["version"] = current.version + 1

            snapshot = EngineConfig.model_validate(data)
            self._current = snapshot

        logger.info(f"Config section '{section}' updated -> v{snapshot.version}")
        return snapshot
