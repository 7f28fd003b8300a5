"""Game modules for the wagering core."""

from .base import Quote, WagerGame
from .dice import DiceGame, DiceSelection, toggle_direction
from .coinflip import CoinflipGame, CoinSelection, CoinSide

__all__ = [
    "Quote",
    "WagerGame",
    "DiceGame",
    "DiceSelection",
    "toggle_direction",
    "CoinflipGame",
    "CoinSelection",
    "CoinSide",
]
