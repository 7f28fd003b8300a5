"""
Wager error taxonomy.

Validation errors stay local to the session and never reach the store.
Settlement errors always surface to the player with an actionable message.
"""


class WagerError(Exception):
    """Base class for every error raised by the wagering core."""

    status_code = 400
    code = "wager_error"

    def __init__(self, message: str = None):
        super().__init__(message or self.__doc__.strip())
        self.message = message or self.__doc__.strip()

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


# ==================== Validation ====================

class InvalidBetError(WagerError):
    """Bet amount must be a positive number."""

    code = "invalid_bet"


class InsufficientBalanceError(WagerError):
    """Insufficient balance."""

    code = "insufficient_balance"


class RoundInProgressError(WagerError):
    """A round is already in progress."""

    status_code = 409
    code = "round_in_progress"


class UnknownGameError(WagerError):
    """Unknown game."""

    status_code = 404
    code = "unknown_game"


class UnknownRoundError(WagerError):
    """No pending settlement for this round."""

    status_code = 404
    code = "unknown_round"


class OutcomeAlreadyDrawnError(WagerError):
    """Round outcome has already been drawn."""

    status_code = 500
    code = "outcome_already_drawn"


# ==================== Wallet store ====================

class WalletNotFoundError(WagerError):
    """Wallet not found."""

    status_code = 404
    code = "wallet_not_found"


class InsufficientFundsError(WagerError):
    """Wallet bucket cannot cover the decrement."""

    code = "insufficient_funds"


# ==================== Settlement ====================

class SettlementError(WagerError):
    """Round could not be settled."""

    status_code = 502
    code = "settlement_failed"

    def __init__(self, message: str = None, round_id: str = None):
        super().__init__(message)
        self.round_id = round_id

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.round_id:
            data["round_id"] = self.round_id
        return data


class SettlementDebitError(SettlementError):
    """Your bet could not be placed. No funds were taken."""

    code = "debit_failed"


class SettlementTimeoutError(SettlementDebitError):
    """The wallet did not respond in time. Your bet was not placed."""

    code = "settlement_timeout"


class SettlementCreditError(SettlementError):
    """Your stake may not have settled. Please contact support."""

    code = "credit_failed"


class SettlementRecordError(SettlementError):
    """Round settled but could not be recorded."""

    code = "record_failed"


class HistoryRefreshError(WagerError):
    """Could not refresh wallet or round history."""

    status_code = 503
    code = "history_refresh_failed"
