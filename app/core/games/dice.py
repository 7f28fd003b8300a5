"""
Dice - Roll 0.00-99.99 and bet UNDER or OVER a threshold.
Lower win chance pays a higher multiplier; the house edge factor caps payouts.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict

from app.config import settings
from app.core.games.base import Quote, WagerGame
from app.core.odds import Direction, multiplier, win_probability
from app.core.rng import unit_to_outcome


@dataclass(frozen=True)
class DiceSelection:
    threshold: int
    direction: Direction

    def to_dict(self) -> dict:
        return {"threshold": self.threshold, "direction": self.direction.value}


def toggle_direction(selection: DiceSelection) -> DiceSelection:
    """
    Flip UNDER/OVER and mirror the threshold so the win chance stays the same.
    Toggling twice returns the original selection.
    """
    flipped = Direction.OVER if selection.direction is Direction.UNDER else Direction.UNDER
    return DiceSelection(threshold=100 - selection.threshold, direction=flipped)


def is_winning_roll(outcome: float, threshold: float, direction: Direction) -> bool:
    # OVER includes the threshold itself so OVER t covers exactly 100 - t percent of the grid
    if Direction(direction) is Direction.UNDER:
        return outcome < threshold
    return outcome >= threshold


class DiceGame(WagerGame):
    """Over/under dice on a 0-100 scale."""

    game_id = "dice"
    display_name = "Cyber Dice"

    def __init__(self, config=None):
        super().__init__(config or settings.games.dice)
        if self.config.min_threshold + self.config.max_threshold != 100:
            raise ValueError("Dice threshold bounds must mirror around 50")
        if not 0 < self.config.min_threshold < self.config.max_threshold < 100:
            raise ValueError("Dice threshold bounds must sit inside (0, 100)")

    @property
    def house_edge_factor(self) -> float:
        return self.config.house_edge_factor

    def clamp_threshold(self, threshold: float) -> int:
        return int(max(self.config.min_threshold, min(self.config.max_threshold, round(threshold))))

    def default_selection(self) -> DiceSelection:
        return DiceSelection(
            threshold=self.clamp_threshold(self.config.default_threshold),
            direction=Direction.UNDER,
        )

    def apply(self, selection: DiceSelection, changes: Dict[str, Any]) -> DiceSelection:
        threshold = changes.get("threshold")
        direction = changes.get("direction")

        if direction is not None:
            direction = Direction(direction)
            if threshold is None and direction is not selection.direction:
                return toggle_direction(selection)
            selection = replace(selection, direction=direction)

        if threshold is not None:
            selection = replace(selection, threshold=self.clamp_threshold(threshold))

        return selection

    def quote(self, selection: DiceSelection) -> Quote:
        probability = win_probability(selection.threshold, selection.direction)
        return Quote(
            win_probability=probability,
            multiplier=multiplier(probability, self.house_edge_factor),
        )

    def outcome_from_unit(self, unit: float) -> float:
        return unit_to_outcome(unit)

    def is_win(self, outcome: float, selection: DiceSelection) -> bool:
        return is_winning_roll(outcome, selection.threshold, selection.direction)

    def display_value(self, display_rng) -> float:
        return unit_to_outcome(display_rng.random_float())

    def outcome_label(self, outcome: float) -> str:
        return f"{outcome:.2f}"

    def describe(self, selection: DiceSelection) -> str:
        return f"Dice: {selection.direction.value.upper()} {selection.threshold}"

    def info(self) -> dict:
        data = super().info()
        data.update(
            {
                "house_edge_factor": self.house_edge_factor,
                "min_threshold": self.config.min_threshold,
                "max_threshold": self.config.max_threshold,
            }
        )
        return data
