"""
Round orchestration.

A PlayerSession runs one player's rounds through an explicit state machine:

    IDLE -> VALIDATING -> DEBITING -> SUSPENSE -> RESOLVING -> SETTLING -> IDLE
                         any step --error--> FAILED -> IDLE

DEBITING only touches the cached wallet. The store sees the debit during
SETTLING, after the outcome is drawn. Only one round may be in flight per
session, and selections can only change while IDLE.
"""

import asyncio
import inspect
import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from app.config import settings
from app.core.economy import SettlementBridge
from app.core.exceptions import (
    HistoryRefreshError,
    InvalidBetError,
    OutcomeAlreadyDrawnError,
    RoundInProgressError,
    SettlementTimeoutError,
    UnknownGameError,
    UnknownRoundError,
    WagerError,
)
from app.core.games.base import WagerGame
from app.core.games.dice import DiceSelection, toggle_direction
from app.core.logger import get_logger, get_round_logger
from app.core.odds import round_payout, settle_amount
from app.core.rng import DisplayRNG, SeedCommitment, TrueRNG, rng as default_rng
from app.core.suspense import SuspenseTimer
from app.core.wallet import PendingDebit, WalletCache

logger = get_logger("round")


class RoundState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    DEBITING = "debiting"
    SUSPENSE = "suspense"
    RESOLVING = "resolving"
    SETTLING = "settling"
    FAILED = "failed"


@dataclass
class Round:
    """One wager. Odds are frozen at construction; the outcome is set once."""

    round_id: str
    user_id: str
    game_id: str
    game_name: str
    bet_amount: float
    selection: Any
    stake_bucket: str
    payout_bucket: str
    win_probability: float
    payout_multiplier: float
    commitment: SeedCommitment
    description: str
    precision: int = 2
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    drawn: bool = False
    outcome: Any = None
    outcome_label: str = ""
    outcome_value: float = 0.0
    is_win: bool = False
    payout: float = 0.0

    debit_confirmed: bool = False
    credit_confirmed: bool = False
    settled: bool = False

    @property
    def profit(self) -> float:
        return settle_amount(self.payout - self.bet_amount, self.precision)

    def set_outcome(self, outcome, is_win: bool, label: str, value: float):
        if self.drawn:
            raise OutcomeAlreadyDrawnError(f"Round {self.round_id} already has an outcome")
        self.drawn = True
        self.outcome = outcome
        self.outcome_label = label
        self.outcome_value = value
        self.is_win = is_win
        self.payout = settle_amount(
            round_payout(self.bet_amount, self.payout_multiplier, is_win), self.precision
        )

    def history_entry(self) -> Dict:
        return {
            "round_id": self.round_id,
            "user_id": self.user_id,
            "game_id": self.game_id,
            "bet": self.bet_amount,
            "payout": self.payout,
            "multiplier": self.payout_multiplier,
            "outcome_value": self.outcome_value,
            "outcome_label": self.outcome_label,
            "is_win": self.is_win,
            "selection": json.dumps(self.selection.to_dict()),
            "server_seed": self.commitment.server_seed,
            "server_seed_hash": self.commitment.server_seed_hash,
            "client_seed": self.commitment.client_seed,
            "nonce": self.commitment.nonce,
            "created_at": self.created_at,
        }

    def to_dict(self) -> dict:
        data = {
            "round_id": self.round_id,
            "game_id": self.game_id,
            "bet": self.bet_amount,
            "selection": self.selection.to_dict(),
            "stake_bucket": self.stake_bucket,
            "win_probability": self.win_probability,
            "multiplier": round(self.payout_multiplier, 4),
            "created_at": self.created_at,
        }
        if self.drawn:
            data.update(
                {
                    "outcome": self.outcome_label,
                    "outcome_value": self.outcome_value,
                    "is_win": self.is_win,
                    "payout": self.payout,
                    "profit": self.profit,
                }
            )
        # The server seed stays secret until the round has settled
        data["fairness"] = (
            self.commitment.reveal() if self.settled else self.commitment.public()
        )
        return data


class PlayerSession:
    """Round orchestrator, cached wallet and history feed for one player."""

    def __init__(
        self,
        user_id: str,
        games: Dict[str, WagerGame],
        bridge: Optional[SettlementBridge] = None,
        rng: Optional[TrueRNG] = None,
        display_rng: Optional[DisplayRNG] = None,
        listener: Optional[Callable[[dict], Any]] = None,
        history_limit: Optional[int] = None,
        history_attempts: Optional[int] = None,
    ):
        self.user_id = user_id
        self.games = games
        self.bridge = bridge or SettlementBridge()
        self.rng = rng or default_rng
        self.display_rng = display_rng or DisplayRNG()
        self.listener = listener
        self.history_limit = history_limit or settings.history.limit
        self.history_attempts = max(1, history_attempts or settings.history.refresh_attempts)
        self.precision = settings.wallet.precision

        self.state = RoundState.IDLE
        self.wallet = WalletCache(
            user_id, settings.wallet.stake_buckets, settings.wallet.payout_bucket
        )
        self.selections = {gid: game.default_selection() for gid, game in games.items()}
        self.history: Dict[str, List[Dict]] = {gid: [] for gid in games}
        self.history_stale: Dict[str, bool] = {gid: False for gid in games}
        self.last_result: Dict[str, Round] = {}
        self.last_error: Optional[dict] = None
        self.pending_credits: Dict[str, Round] = {}
        self.current: Optional[Round] = None
        self.nonce = 0

        self._timer: Optional[SuspenseTimer] = None
        self._tasks = set()

    # ==================== Events ====================

    def _emit(self, event: dict):
        if self.listener is None:
            return
        result = self.listener(event)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _set_state(self, state: RoundState):
        self.state = state
        event = {"type": "round_state", "state": state.value}
        if self.current:
            event["round_id"] = self.current.round_id
            event["game_id"] = self.current.game_id
        self._emit(event)

    def _emit_balance(self):
        if self.wallet.loaded:
            self._emit({"type": "balance_update", "wallet": self.wallet.snapshot.to_dict(self.precision)})

    # ==================== Lookups ====================

    def game(self, game_id: str) -> WagerGame:
        game = self.games.get(game_id)
        if game is None:
            raise UnknownGameError(f"Unknown game: {game_id}")
        if not game.config.enabled:
            raise UnknownGameError(f"{game.display_name} is disabled")
        return game

    @property
    def busy(self) -> bool:
        return self.state is not RoundState.IDLE

    def _require_idle(self):
        if self.busy:
            raise RoundInProgressError()

    # ==================== Session / history feed ====================

    async def load(self):
        """Initial mount: wallet and every game's recent history."""
        await self.refresh_wallet()
        for game_id in self.games:
            await self.refresh_history(game_id)

    async def refresh_wallet(self):
        """Overwrite the cached wallet with the store's value."""
        row = await self.bridge.get_wallet(self.user_id)
        snapshot = self.wallet.reconcile(row)
        self._emit_balance()
        return snapshot

    async def _fetch_history(self, game_id: str) -> List[Dict]:
        last_error = None
        for _ in range(self.history_attempts):
            try:
                return await self.bridge.list_recent_rounds(self.user_id, game_id, self.history_limit)
            except Exception as e:
                last_error = e
        raise HistoryRefreshError(f"Could not load {game_id} history: {last_error!r}")

    async def refresh_history(self, game_id: str) -> List[Dict]:
        """Reload recent rounds. Keeps the stale list if the store is unavailable."""
        try:
            self.history[game_id] = await self._fetch_history(game_id)
            self.history_stale[game_id] = False
        except HistoryRefreshError as e:
            logger.warning(e.message, extra={"user_id": self.user_id})
            self.history_stale[game_id] = True
        return self.history[game_id]

    async def _reconcile(self, game_id: Optional[str] = None):
        """Authoritative refetch after settlement. Never fails the round."""
        try:
            await self.refresh_wallet()
        except Exception as e:
            logger.warning(f"Wallet refresh failed, keeping cached balance: {e!r}",
                           extra={"user_id": self.user_id})
            self.wallet.mark_stale()
            self._emit_balance()
        if game_id:
            await self.refresh_history(game_id)

    # ==================== Controls ====================

    def select(self, game_id: str, **changes):
        """Change the selection for a game. Only allowed between rounds."""
        self._require_idle()
        game = self.game(game_id)
        changes = {k: v for k, v in changes.items() if v is not None}
        self.selections[game_id] = game.apply(self.selections[game_id], changes)
        return self.selections[game_id]

    def toggle_direction(self, game_id: str = "dice") -> DiceSelection:
        self._require_idle()
        self.game(game_id)
        selection = self.selections[game_id]
        if not isinstance(selection, DiceSelection):
            raise UnknownGameError(f"{game_id} has no direction to toggle")
        self.selections[game_id] = toggle_direction(selection)
        return self.selections[game_id]

    def quote(self, game_id: str):
        return self.game(game_id).quote(self.selections[game_id])

    # ==================== Rounds ====================

    def _validate_bet(self, game: WagerGame, bet_amount) -> float:
        try:
            amount = float(bet_amount)
        except (TypeError, ValueError):
            raise InvalidBetError(f"Invalid bet amount: {bet_amount!r}")

        if not math.isfinite(amount) or amount <= 0:
            raise InvalidBetError()

        amount = settle_amount(amount, self.precision)
        if amount <= 0:
            raise InvalidBetError()
        if amount < game.min_bet or amount > game.max_bet:
            raise InvalidBetError(f"Bet must be between {game.min_bet} and {game.max_bet}")
        return amount

    def _new_round(self, game: WagerGame, amount: float, bucket: str, client_seed: Optional[str]) -> Round:
        selection = self.selections[game.game_id]
        quote = game.quote(selection)
        self.nonce += 1
        return Round(
            round_id=uuid.uuid4().hex,
            user_id=self.user_id,
            game_id=game.game_id,
            game_name=game.display_name,
            bet_amount=amount,
            selection=selection,
            stake_bucket=bucket,
            payout_bucket=self.wallet.payout_bucket,
            win_probability=quote.win_probability,
            payout_multiplier=quote.multiplier,
            commitment=self.rng.new_commitment(client_seed, self.nonce),
            description=game.describe(selection),
            precision=self.precision,
        )

    def _on_tick(self, game: WagerGame, index: int):
        self._emit(
            {
                "type": "suspense_tick",
                "round_id": self.current.round_id if self.current else None,
                "tick": index,
                "value": game.display_value(self.display_rng),
            }
        )

    async def play(self, game_id: str, bet_amount, client_seed: Optional[str] = None) -> Round:
        """Run one round to completion. Raises a WagerError if it fails."""
        self._require_idle()
        game = self.game(game_id)

        self._set_state(RoundState.VALIDATING)
        wager: Optional[Round] = None
        debit: Optional[PendingDebit] = None

        try:
            if not self.wallet.loaded:
                await self.refresh_wallet()
            amount = self._validate_bet(game, bet_amount)
            bucket = self.wallet.pick_stake_bucket(amount)

            wager = self._new_round(game, amount, bucket, client_seed)
            self.current = wager
            log = get_round_logger("round", wager.round_id, self.user_id)
            log.info(f"{game.display_name} bet {amount:.2f} on {wager.description}")

            self._set_state(RoundState.DEBITING)
            debit = self.wallet.apply_debit(bucket, amount)
            self._emit_balance()

            self._set_state(RoundState.SUSPENSE)
            self._timer = SuspenseTimer(
                game.suspense_ms, game.tick_ms, lambda i: self._on_tick(game, i)
            )
            await self._timer.wait()
            self._timer = None

            self._set_state(RoundState.RESOLVING)
            outcome = game.outcome_from_unit(self.rng.draw(wager.commitment))
            wager.set_outcome(
                outcome,
                game.is_win(outcome, wager.selection),
                game.outcome_label(outcome),
                game.outcome_value(outcome),
            )
            log.info(f"Outcome {wager.outcome_label}: {'win' if wager.is_win else 'loss'} "
                     f"payout {wager.payout:.2f}")

            self._set_state(RoundState.SETTLING)
            await self.bridge.settle(wager, self.wallet.bucket_names)
            wager.settled = True
            if wager.is_win:
                self.wallet.apply_credit(wager.payout)
        except asyncio.CancelledError:
            self._abort(wager, debit)
            raise
        except WagerError as e:
            await self._fail(game_id, wager, debit, e)
            raise
        except Exception as e:
            logger.error(f"Unexpected round failure: {e!r}", exc_info=True)
            await self._fail(game_id, wager, debit, WagerError("Round failed unexpectedly"))
            raise

        self.last_result[game_id] = wager
        self.last_error = None
        self._emit({"type": "round_result", "round": wager.to_dict()})

        await self._reconcile(game_id)
        self.current = None
        self._set_state(RoundState.IDLE)
        return wager

    def _keep_unpaid(self, wager: Round):
        """A won round whose stake is taken but payout is not stays retryable."""
        if wager.is_win and not wager.credit_confirmed:
            self.pending_credits[wager.round_id] = wager

    async def _fail(self, game_id: str, wager: Optional[Round], debit: Optional[PendingDebit], error: WagerError):
        self._set_state(RoundState.FAILED)
        self.last_error = error.to_dict()

        if wager is not None and wager.debit_confirmed:
            # The stake really left the wallet; only the store can say where it stands
            self._keep_unpaid(wager)
            await self._reconcile(game_id)
        elif debit is not None:
            self.wallet.rollback(debit)
            self._emit_balance()
            if isinstance(error, SettlementTimeoutError):
                await self._reconcile(game_id)

        self._emit({"type": "round_error", **self.last_error})
        self.current = None
        self._timer = None
        self._set_state(RoundState.IDLE)

    def _abort(self, wager: Optional[Round], debit: Optional[PendingDebit]):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if wager is not None and wager.debit_confirmed:
            self._keep_unpaid(wager)
            self.wallet.mark_stale()
        elif debit is not None:
            self.wallet.rollback(debit)
        logger.info("Round torn down before it settled", extra={"user_id": self.user_id})
        self.current = None
        self.state = RoundState.IDLE

    async def retry_credit(self, round_id: str) -> Round:
        """Re-send a failed payout. The round's credit key makes this at-most-once."""
        self._require_idle()
        wager = self.pending_credits.get(round_id)
        if wager is None:
            raise UnknownRoundError()

        self.current = wager
        self._set_state(RoundState.SETTLING)
        try:
            row = await self.bridge.credit(wager)
            wager.credit_confirmed = True
            del self.pending_credits[round_id]
            await self.bridge.record(wager, row, self.wallet.bucket_names)
            wager.settled = True
        except WagerError as e:
            await self._fail(wager.game_id, wager, None, e)
            raise

        self.last_result[wager.game_id] = wager
        self.last_error = None
        self._emit({"type": "round_result", "round": wager.to_dict()})
        await self._reconcile(wager.game_id)
        self.current = None
        self._set_state(RoundState.IDLE)
        return wager

    def close(self):
        """Tear down a running suspense timer. The awaiting round rolls back."""
        if self._timer is not None:
            self._timer.cancel()

    def to_dict(self, game_id: Optional[str] = None) -> dict:
        data = {
            "state": self.state.value,
            "wallet": self.wallet.snapshot.to_dict(self.precision) if self.wallet.loaded else None,
            "pending_credits": list(self.pending_credits),
            "last_error": self.last_error,
        }
        if game_id:
            game = self.game(game_id)
            selection = self.selections[game_id]
            last = self.last_result.get(game_id)
            data.update(
                {
                    "game": game.info(),
                    "selection": selection.to_dict(),
                    "quote": game.quote(selection).to_dict(),
                    "last_result": last.to_dict() if last else None,
                    "history": self.history[game_id],
                    "history_stale": self.history_stale[game_id],
                }
            )
        return data
