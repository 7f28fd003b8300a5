"""Common shape of a single-draw wager game."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict

from app.core.odds import potential_payout


@dataclass(frozen=True)
class Quote:
    """Odds for a selection, frozen onto a round when it starts."""

    win_probability: float
    multiplier: float

    def potential_payout(self, bet_amount: float) -> float:
        return potential_payout(bet_amount, self.multiplier)

    def to_dict(self) -> dict:
        return {
            "win_probability": self.win_probability,
            "multiplier": round(self.multiplier, 4),
        }


class WagerGame(ABC):
    """
    A game resolved from one unit draw in [0, 1).

    Subclasses own their selection type, clamp player input in `apply`, and
    decide wins in `is_win`. Everything else (validation, debit, suspense,
    settlement) is shared by the round orchestrator.
    """

    game_id: str = "base"
    display_name: str = "Base Game"

    def __init__(self, config):
        self.config = config

    @property
    def min_bet(self) -> float:
        return self.config.min_bet

    @property
    def max_bet(self) -> float:
        return self.config.max_bet

    @property
    def suspense_ms(self) -> int:
        return self.config.suspense_ms

    @property
    def tick_ms(self) -> int:
        return self.config.tick_ms

    @abstractmethod
    def default_selection(self):
        ...

    @abstractmethod
    def apply(self, selection, changes: Dict[str, Any]):
        """Return a new selection with player changes applied and clamped."""
        ...

    @abstractmethod
    def quote(self, selection) -> Quote:
        ...

    @abstractmethod
    def outcome_from_unit(self, unit: float):
        ...

    @abstractmethod
    def is_win(self, outcome, selection) -> bool:
        ...

    @abstractmethod
    def display_value(self, display_rng):
        """Decorative value shown while the round is in suspense."""
        ...

    def outcome_value(self, outcome) -> float:
        """Numeric form of an outcome for history storage."""
        return float(outcome)

    def outcome_label(self, outcome) -> str:
        return str(outcome)

    def describe(self, selection) -> str:
        return self.display_name

    def info(self) -> dict:
        return {
            "game_id": self.game_id,
            "name": self.display_name,
            "enabled": self.config.enabled,
            "min_bet": self.min_bet,
            "max_bet": self.max_bet,
            "suspense_ms": self.suspense_ms,
        }
