# policy.py
"""
Win-Rate Policy Controller.

Single place where every probabilistic gate of the evaluators gets its
odds: triple/pair/full-grid chances for slots, the effective dice house
edge, forced-loss and lucky-win flips, big-win flags and boosts. All
values derive from one EngineConfig snapshot and the player's play count.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from casino_engine.config import EngineConfig, GameKind, PolicyParameters
from casino_engine.utils import clamp

# Highest dice house edge allowed; keeps (100 - edge) / target positive
MAX_HOUSE_EDGE = 99.0


class WinRatePolicy:
    """Read-only view over a config snapshot."""

    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    @property
    def version(self) -> int:
        return self.config.version

    # =====================================================
    # CURVE LOOKUP
    # =====================================================

    def parameters(self, kind: GameKind, play_count: int) -> PolicyParameters:
        stages = self.config.policy_for(kind).stages
        play_count = max(0, play_count)
        for stage in stages:
            if stage.max_play_count is None or play_count < stage.max_play_count:
                return stage.parameters
        return stages[-1].parameters

    def _base_win_chance(self, kind: GameKind) -> float:
        if kind == GameKind.SLOTS:
            return self.config.slots.triple_win_chance
        if kind == GameKind.DICE:
            return 100.0 - self.config.dice.house_edge
        return 100.0

    def adjusted_win_chance(self, kind: GameKind, play_count: int) -> float:
        """Win chance in percent, always within [0, 100]."""
        adjustment = self.parameters(kind, play_count).base_win_chance_adjustment
        return clamp(self._base_win_chance(kind) + adjustment, 0.0, 100.0)

    def effective_house_edge(self, kind: GameKind, play_count: int) -> float:
        return min(MAX_HOUSE_EDGE, 100.0 - self.adjusted_win_chance(kind, play_count))

    def pair_match_chance(self, play_count: int) -> float:
        adjustment = self.parameters(GameKind.SLOTS, play_count).base_win_chance_adjustment
        return clamp(self.config.slots.pair_win_chance + adjustment, 0.0, 100.0)

    def full_grid_chance(self, play_count: int) -> float:
        adjustment = self.parameters(GameKind.SLOTS, play_count).base_win_chance_adjustment
        return clamp(self.config.slots.full_grid_chance + adjustment, 0.0, 100.0)

    def big_win_boost(self, play_count: int, kind: GameKind = GameKind.SLOTS) -> Decimal:
        return self.parameters(kind, play_count).big_win_boost

    # =====================================================
    # GATES
    # =====================================================

    @staticmethod
    def passes(chance_percent: float, rng: Any) -> bool:
        """One draw against a percent chance. 0 never passes, 100 always does."""
        if chance_percent <= 0:
            return False
        if chance_percent >= 100:
            return True
        return rng.random() * 100.0 < chance_percent

    @staticmethod
    def _flip(probability: float, rng: Any) -> bool:
        if probability <= 0:
            return False
        if probability >= 1:
            return True
        return rng.random() < probability

    def forced_loss(self, kind: GameKind, play_count: int, rng: Any) -> bool:
        return self._flip(self.parameters(kind, play_count).forced_loss_probability, rng)

    def lucky_win(self, kind: GameKind, play_count: int, rng: Any) -> bool:
        return self._flip(self.parameters(kind, play_count).lucky_win_probability, rng)

    def is_big_win(self, play_count: int, rng: Any, kind: GameKind = GameKind.SLOTS) -> bool:
        return self._flip(self.parameters(kind, play_count).big_win_probability, rng)
