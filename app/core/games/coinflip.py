from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

from app.config import settings
from app.core.games.base import Quote, WagerGame


class CoinSide(str, Enum):
    HEADS = "heads"
    TAILS = "tails"


@dataclass(frozen=True)
class CoinSelection:
    side: CoinSide

    def to_dict(self) -> dict:
        return {"side": self.side.value}


class CoinflipGame(WagerGame):
    """
    Simple 50/50 coin flip with a fixed multiplier.
    The house edge is whatever the multiplier leaves below 2x.
    """

    game_id = "coinflip"
    display_name = "Coin Flip"

    def __init__(self, config=None):
        super().__init__(config or settings.games.coinflip)

    def default_selection(self) -> CoinSelection:
        return CoinSelection(side=CoinSide.HEADS)

    def apply(self, selection: CoinSelection, changes: Dict[str, Any]) -> CoinSelection:
        side = changes.get("side")
        if side is None:
            return selection
        return CoinSelection(side=CoinSide(str(side).lower().strip()))

    def quote(self, selection: CoinSelection) -> Quote:
        return Quote(win_probability=50.0, multiplier=self.config.multiplier)

    def outcome_from_unit(self, unit: float) -> CoinSide:
        return CoinSide.HEADS if unit < 0.5 else CoinSide.TAILS

    def is_win(self, outcome: CoinSide, selection: CoinSelection) -> bool:
        return outcome is selection.side

    def display_value(self, display_rng) -> str:
        return self.outcome_from_unit(display_rng.random_float()).value

    def outcome_value(self, outcome: CoinSide) -> float:
        return 0.0 if outcome is CoinSide.HEADS else 1.0

    def outcome_label(self, outcome: CoinSide) -> str:
        return outcome.value

    def describe(self, selection: CoinSelection) -> str:
        return f"Coin Flip: {selection.side.value.upper()}"
