"""
Payout calculator.

Pure functions for win probability, house-edge multipliers and payouts.
Thresholds are clamped by the game's input layer, never here. Money keeps
full float precision until settlement, where it is rounded exactly once.
"""

from enum import Enum
from typing import Optional


class Direction(str, Enum):
    UNDER = "under"
    OVER = "over"


class QuickAction(str, Enum):
    MIN = "min"
    HALF = "half"
    DOUBLE = "double"
    MAX = "max"


def win_probability(threshold: float, direction: Direction) -> float:
    """Percent chance of winning for a threshold and direction."""
    if Direction(direction) is Direction.UNDER:
        return float(threshold)
    return 100.0 - threshold


def multiplier(probability: float, house_edge_factor: float) -> float:
    """Payout multiplier for a win probability in percent."""
    if probability <= 0:
        return 0.0
    return house_edge_factor / probability


def potential_payout(bet_amount: float, payout_multiplier: float) -> float:
    return bet_amount * payout_multiplier


def round_payout(bet_amount: float, payout_multiplier: float, is_win: bool) -> float:
    """Payout of a resolved round, unrounded."""
    return potential_payout(bet_amount, payout_multiplier) if is_win else 0.0


def settle_amount(value: float, precision: int = 2) -> float:
    """Round once to the wallet's minor unit."""
    return round(value, precision)


def format_amount(value: float) -> str:
    """Two-decimal display string."""
    return f"{value:.2f}"


def quick_amount(
    action: QuickAction, current: Optional[float], balance: float, minimum: float
) -> float:
    """
    Quick bet amount buttons.

    min resets to the table minimum, half never drops below it, double has no
    cap (validation happens when the bet is placed) and max is the balance.
    """
    action = QuickAction(action)
    current = current or 0.0

    if action is QuickAction.MIN:
        value = minimum
    elif action is QuickAction.HALF:
        value = max(minimum, current / 2)
    elif action is QuickAction.DOUBLE:
        value = current * 2
    else:
        value = balance

    return settle_amount(value)
