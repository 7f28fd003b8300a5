"""
Wallet settlement bridge.

Turns a resolved round into ledger mutations against the wallet store:
debit the stake, credit the payout on a win, then log the wager. Each step
runs in a worker thread under a bounded timeout, and the debit and credit
carry per-round idempotency keys so a retried step is applied at most once.
"""

import asyncio
from typing import TYPE_CHECKING, Dict, List, Optional

from app.config import settings
from app.core.database import DECREMENT, INCREMENT, db
from app.core.exceptions import (
    SettlementCreditError,
    SettlementDebitError,
    SettlementRecordError,
    SettlementTimeoutError,
)
from app.core.idempotency import round_key
from app.core.logger import get_logger, get_round_logger

if TYPE_CHECKING:
    from app.core.round import Round

logger = get_logger("economy")


def _wallet_total(row: Dict, buckets) -> float:
    return sum(float(row.get(b) or 0.0) for b in buckets)


class SettlementBridge:
    """Sequenced settlement calls against the wallet store."""

    def __init__(
        self,
        store=None,
        timeout: Optional[float] = None,
        credit_attempts: Optional[int] = None,
    ):
        self.store = store or db
        self.timeout = timeout if timeout is not None else settings.settlement.timeout_seconds
        self.credit_attempts = max(
            1, credit_attempts if credit_attempts is not None else settings.settlement.credit_attempts
        )

    async def _call(self, func, *args, **kwargs):
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), timeout=self.timeout
        )

    # ==================== Reads ====================

    async def get_wallet(self, user_id: str) -> Dict:
        return await self._call(self.store.get_wallet, user_id)

    async def list_recent_rounds(self, user_id: str, game_id: str, limit: int) -> List[Dict]:
        return await self._call(self.store.list_recent_rounds, user_id, game_id, limit)

    # ==================== Settlement steps ====================

    async def debit(self, wager: "Round") -> Dict:
        """
        Take the stake. Unless the debit was confirmed, a raise means the store
        holds no debit for the round.

        A timed-out call may still be running in its worker thread. Claiming
        the debit key settles the race: if the claim wins, the late write
        becomes a replay and does nothing; if the key is already taken, the
        debit landed and the round carries on.
        """
        log = get_round_logger("economy", wager.round_id, wager.user_id)
        key = round_key(wager.round_id, "debit")
        try:
            row = await self._call(
                self.store.adjust_balance,
                wager.user_id,
                wager.bet_amount,
                DECREMENT,
                wager.stake_bucket,
                idempotency_key=key,
            )
        except asyncio.TimeoutError as e:
            log.error("Debit timed out")
            if await self._claim(key):
                raise SettlementTimeoutError(round_id=wager.round_id) from e
            log.warning("Debit landed after the timeout")
            wager.debit_confirmed = True
            return await self.get_wallet(wager.user_id)
        except Exception as e:
            log.warning(f"Debit rejected: {e}")
            raise SettlementDebitError(
                f"Your bet could not be placed: {e}", round_id=wager.round_id
            ) from e

        log.info(f"Debited {wager.bet_amount:.2f} from {wager.stake_bucket}")
        return row

    async def _claim(self, key: str) -> bool:
        """Take a settlement key so nothing can apply it later."""
        try:
            return await self._call(self.store.mark_key_as_used, key)
        except Exception as e:
            # Unknown either way; the caller reconciles from the store
            logger.critical(f"Could not claim {key} after a timeout: {e!r}")
            return True

    async def credit(self, wager: "Round") -> Dict:
        """
        Pay out a winning wager. Retries reuse the same idempotency key so
        a credit that reached the store before failing is not applied twice.
        """
        log = get_round_logger("economy", wager.round_id, wager.user_id)
        key = round_key(wager.round_id, "credit")
        last_error = None

        for attempt in range(1, self.credit_attempts + 1):
            try:
                row = await self._call(
                    self.store.adjust_balance,
                    wager.user_id,
                    wager.payout,
                    INCREMENT,
                    wager.payout_bucket,
                    idempotency_key=key,
                )
                log.info(f"Credited {wager.payout:.2f} to {wager.payout_bucket}")
                return row
            except Exception as e:
                last_error = e
                log.warning(f"Credit attempt {attempt}/{self.credit_attempts} failed: {e!r}")

        log.critical(
            f"Stake debited but payout of {wager.payout:.2f} not credited; "
            f"retry with key {key}"
        )
        raise SettlementCreditError(round_id=wager.round_id) from last_error

    async def record(self, wager: "Round", wallet_row: Dict, buckets) -> None:
        """Write the ledger rows and the history entry for a settled wager."""
        log = get_round_logger("economy", wager.round_id, wager.user_id)
        balance_after = _wallet_total(wallet_row, buckets)
        try:
            await self._call(
                self.store.record_transaction,
                wager.user_id,
                "game_bet",
                wager.bet_amount,
                balance_after - wager.payout,
                game=wager.game_id,
                description=wager.description,
                round_id=wager.round_id,
            )
            if wager.is_win:
                await self._call(
                    self.store.record_transaction,
                    wager.user_id,
                    "game_win",
                    wager.payout,
                    balance_after,
                    game=wager.game_id,
                    description=f"{wager.game_name} Win: {wager.outcome_label}",
                    round_id=wager.round_id,
                )
            await self._call(self.store.record_round, wager.history_entry())
        except Exception as e:
            log.error(f"Round settled but not recorded: {e!r}")
            raise SettlementRecordError(
                "Round settled but could not be recorded", round_id=wager.round_id
            ) from e

    async def settle(self, wager: "Round", buckets) -> Dict:
        """Debit, then credit on a win, then record. Strictly in that order."""
        row = await self.debit(wager)
        wager.debit_confirmed = True
        if wager.is_win and wager.payout > 0:
            row = await self.credit(wager)
        wager.credit_confirmed = True
        await self.record(wager, row, buckets)
        return row
