import asyncio
import math
import time
from unittest.mock import patch

import pytest

from app.config import CoinflipConfig, DiceConfig
from app.core.database import Database
from app.core.economy import SettlementBridge
from app.core.exceptions import (
    InsufficientBalanceError,
    InvalidBetError,
    OutcomeAlreadyDrawnError,
    RoundInProgressError,
    SettlementCreditError,
    SettlementDebitError,
    SettlementRecordError,
    SettlementTimeoutError,
    UnknownGameError,
    UnknownRoundError,
)
from app.core.games import CoinflipGame, CoinSide, DiceGame, DiceSelection
from app.core.odds import Direction
from app.core.rng import TrueRNG
from app.core.round import PlayerSession, RoundState

# Mark all tests in this module as asyncio
pytestmark = pytest.mark.asyncio


class FixedRNG(TrueRNG):
    """Real commitments, but every draw lands on the same unit value."""

    def __init__(self, unit=0.10, trace=None):
        self.unit = unit
        self.trace = trace
        self.draws = 0

    def draw(self, commitment):
        self.draws += 1
        if self.trace is not None:
            self.trace.append("draw")
        return self.unit


def fast_games(suspense_ms=0, tick_ms=0, **dice_overrides):
    return {
        "dice": DiceGame(DiceConfig(suspense_ms=suspense_ms, tick_ms=tick_ms, **dice_overrides)),
        "coinflip": CoinflipGame(CoinflipConfig(suspense_ms=suspense_ms, tick_ms=tick_ms)),
    }


async def open_session(
    store,
    rng=None,
    games=None,
    timeout=2,
    credit_attempts=2,
    events=None,
    main_balance=100.0,
    game_balance=0.0,
):
    user_id = store.create_wallet(main_balance=main_balance, game_balance=game_balance)["user_id"]
    session = PlayerSession(
        user_id,
        games or fast_games(),
        bridge=SettlementBridge(store=store, timeout=timeout, credit_attempts=credit_attempts),
        rng=rng or FixedRNG(),
        listener=events.append if events is not None else None,
    )
    await session.load()
    return session


@pytest.fixture
def store(tmp_path):
    return Database(tmp_path / "wallet.db")


# ==================== Happy paths ====================


async def test_winning_round(store):
    session = await open_session(store)

    wager = await session.play("dice", 10)

    assert wager.outcome == 10.0
    assert wager.is_win
    assert wager.payout == 19.6
    assert wager.profit == 9.6
    row = store.get_wallet(session.user_id)
    assert row["main_balance"] == 90
    assert row["game_balance"] == 19.6
    assert session.wallet.balance == pytest.approx(109.6)
    assert session.state is RoundState.IDLE
    assert [h["round_id"] for h in session.history["dice"]] == [wager.round_id]


async def test_losing_round(store):
    session = await open_session(store, rng=FixedRNG(0.75))

    wager = await session.play("dice", 10)

    assert wager.outcome == 75.0
    assert not wager.is_win
    assert wager.payout == 0
    assert wager.profit == -10
    assert store.get_wallet(session.user_id)["main_balance"] == 90
    assert store.get_wallet(session.user_id)["game_balance"] == 0
    assert session.wallet.balance == pytest.approx(90)


async def test_over_wins_on_threshold(store):
    session = await open_session(store, rng=FixedRNG(0.50))
    session.select("dice", threshold=50, direction=Direction.OVER)

    wager = await session.play("dice", 10)

    assert wager.outcome == 50.0
    assert wager.is_win
    assert wager.payout == 19.6


async def test_one_draw_per_round(store):
    rng = FixedRNG()
    session = await open_session(store, rng=rng)

    wager = await session.play("dice", 10)

    assert rng.draws == 1
    with pytest.raises(OutcomeAlreadyDrawnError):
        wager.set_outcome(99.0, False, "99.00", 99.0)
    assert wager.outcome == 10.0


async def test_state_sequence(store):
    events = []
    session = await open_session(store, events=events)

    await session.play("dice", 10)

    states = [e["state"] for e in events if e["type"] == "round_state"]
    assert states == ["validating", "debiting", "suspense", "resolving", "settling", "idle"]
    assert any(e["type"] == "round_result" for e in events)
    assert any(e["type"] == "balance_update" for e in events)


async def test_suspense_ticks_are_decorative(store):
    events = []
    rng = FixedRNG()
    session = await open_session(store, rng=rng, games=fast_games(100, 20), events=events)

    await session.play("dice", 10)

    ticks = [e for e in events if e["type"] == "suspense_tick"]
    assert ticks
    assert all(0 <= t["value"] < 100 for t in ticks)
    assert rng.draws == 1


async def test_stake_comes_from_covering_bucket(store):
    session = await open_session(store, rng=FixedRNG(0.75), main_balance=5, game_balance=50)

    wager = await session.play("dice", 10)

    assert wager.stake_bucket == "game_balance"
    row = store.get_wallet(session.user_id)
    assert row["main_balance"] == 5
    assert row["game_balance"] == 40


async def test_coinflip_round(store):
    session = await open_session(store, rng=FixedRNG(0.25))

    win = await session.play("coinflip", 10)
    assert win.outcome is CoinSide.HEADS
    assert win.payout == 19.0

    session.select("coinflip", side=CoinSide.TAILS)
    loss = await session.play("coinflip", 10)
    assert not loss.is_win
    assert loss.payout == 0
    assert len(session.history["coinflip"]) == 2
    assert session.history["dice"] == []


async def test_round_is_verifiable(store):
    session = await open_session(store, rng=TrueRNG())

    first = await session.play("dice", 1, client_seed="my-seed")
    second = await session.play("dice", 1, client_seed="my-seed")

    fairness = first.to_dict()["fairness"]
    assert fairness["client_seed"] == "my-seed"
    assert fairness["nonce"] == 1
    assert second.to_dict()["fairness"]["nonce"] == 2

    result = TrueRNG.verify(
        fairness["server_seed"], fairness["server_seed_hash"], fairness["client_seed"], fairness["nonce"]
    )
    assert result["valid"]
    assert result["outcome"] == first.outcome_value


# ==================== Validation ====================


@pytest.mark.parametrize("bet", ["abc", None, 0, -5, 0.001, 0.5, 20000, math.nan, math.inf])
async def test_invalid_bet_never_reaches_store(store, bet):
    rng = FixedRNG()
    session = await open_session(store, rng=rng)

    with pytest.raises(InvalidBetError):
        await session.play("dice", bet)

    assert rng.draws == 0
    assert store.get_wallet(session.user_id)["main_balance"] == 100
    assert session.wallet.balance == 100
    assert session.state is RoundState.IDLE
    assert session.last_error["error"] == "invalid_bet"


async def test_insufficient_balance(store):
    session = await open_session(store)

    with pytest.raises(InsufficientBalanceError):
        await session.play("dice", 150)

    assert store.get_transactions(session.user_id) == []
    assert session.state is RoundState.IDLE


async def test_no_single_bucket_covers_stake(store):
    session = await open_session(store, main_balance=5, game_balance=50)

    with pytest.raises(InsufficientBalanceError):
        await session.play("dice", 52)


async def test_unknown_and_disabled_games(store):
    games = fast_games(enabled=False)
    session = await open_session(store, games=games)

    with pytest.raises(UnknownGameError):
        await session.play("roulette", 10)
    with pytest.raises(UnknownGameError):
        await session.play("dice", 10)


async def test_toggle_direction(store):
    session = await open_session(store)
    session.select("dice", threshold=30)

    assert session.toggle_direction() == DiceSelection(70, Direction.OVER)
    assert session.toggle_direction() == DiceSelection(30, Direction.UNDER)
    with pytest.raises(UnknownGameError):
        session.toggle_direction("coinflip")


# ==================== Concurrency ====================


async def test_one_round_in_flight(store):
    session = await open_session(store, games=fast_games(200, 50))

    task = asyncio.create_task(session.play("dice", 10))
    await asyncio.sleep(0.02)

    assert session.state is RoundState.SUSPENSE
    # Optimistic debit is visible before the store is touched
    assert session.wallet.balance == 90
    assert store.get_wallet(session.user_id)["main_balance"] == 100

    with pytest.raises(RoundInProgressError):
        await session.play("dice", 10)
    with pytest.raises(RoundInProgressError):
        session.select("dice", threshold=10)
    with pytest.raises(RoundInProgressError):
        session.toggle_direction()

    wager = await task
    assert wager.win_probability == 50
    assert session.state is RoundState.IDLE


async def test_close_during_suspense_rolls_back(store):
    rng = FixedRNG()
    session = await open_session(store, rng=rng, games=fast_games(500, 50))

    task = asyncio.create_task(session.play("dice", 10))
    await asyncio.sleep(0.02)
    session.close()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert rng.draws == 0
    assert session.wallet.balance == 100
    assert session.state is RoundState.IDLE
    assert store.get_wallet(session.user_id)["main_balance"] == 100


# ==================== Settlement ====================


class TracingStore(Database):
    def __init__(self, path, trace):
        self.trace = trace
        super().__init__(path)

    def adjust_balance(self, user_id, amount, direction, bucket, idempotency_key=None):
        self.trace.append(direction)
        return super().adjust_balance(user_id, amount, direction, bucket, idempotency_key)

    def record_transaction(self, user_id, tx_type, *args, **kwargs):
        self.trace.append(tx_type)
        return super().record_transaction(user_id, tx_type, *args, **kwargs)

    def record_round(self, entry):
        self.trace.append("history")
        return super().record_round(entry)


async def test_store_touched_only_after_outcome(tmp_path):
    trace = []
    store = TracingStore(tmp_path / "trace.db", trace)
    session = await open_session(store, rng=FixedRNG(trace=trace))

    await session.play("dice", 10)

    assert trace == ["draw", "decrement", "increment", "game_bet", "game_win", "history"]


class RejectingDebitStore(Database):
    def adjust_balance(self, user_id, amount, direction, bucket, idempotency_key=None):
        if direction == "decrement":
            raise ConnectionError("wallet service unavailable")
        return super().adjust_balance(user_id, amount, direction, bucket, idempotency_key)


async def test_debit_failure_rolls_back(tmp_path):
    store = RejectingDebitStore(tmp_path / "reject.db")
    session = await open_session(store)
    before = session.wallet.balance

    with pytest.raises(SettlementDebitError):
        await session.play("dice", 10)

    assert session.wallet.balance == before
    assert store.get_wallet(session.user_id)["main_balance"] == 100
    assert store.get_transactions(session.user_id) == []
    assert session.pending_credits == {}
    assert session.state is RoundState.IDLE


class SlowStore(Database):
    def adjust_balance(self, user_id, *args, **kwargs):
        time.sleep(0.3)
        return self.get_wallet(user_id)


async def test_debit_timeout_rolls_back(tmp_path):
    events = []
    store = SlowStore(tmp_path / "slow.db")
    session = await open_session(store, timeout=0.05, events=events)

    with pytest.raises(SettlementTimeoutError):
        await session.play("dice", 10)

    assert session.wallet.balance == 100
    assert session.state is RoundState.IDLE
    assert session.last_error["error"] == "settlement_timeout"
    assert any(e["type"] == "round_error" for e in events)
    await asyncio.sleep(0.3)


class LateDebitStore(Database):
    """Debit reaches the store only after the bridge has given up on it."""

    def adjust_balance(self, user_id, amount, direction, bucket, idempotency_key=None):
        if direction == "decrement":
            time.sleep(0.3)
        return super().adjust_balance(user_id, amount, direction, bucket, idempotency_key)


async def test_late_debit_after_timeout_is_refused(tmp_path):
    store = LateDebitStore(tmp_path / "late.db")
    session = await open_session(store, timeout=0.05)

    with pytest.raises(SettlementTimeoutError) as excinfo:
        await session.play("dice", 10)
    await asyncio.sleep(0.4)

    # The bridge claimed the debit key, so the late write is a replay
    assert store.is_key_used(f"{excinfo.value.round_id}:debit")
    assert store.get_wallet(session.user_id)["main_balance"] == 100
    assert store.get_transactions(session.user_id) == []
    assert session.wallet.balance == 100
    assert session.pending_credits == {}

    await session.refresh_wallet()
    assert session.wallet.balance == 100


class SlowDebitReplyStore(Database):
    """Debit is applied at once but the reply arrives after the timeout."""

    def adjust_balance(self, user_id, amount, direction, bucket, idempotency_key=None):
        row = super().adjust_balance(user_id, amount, direction, bucket, idempotency_key)
        if direction == "decrement":
            time.sleep(0.3)
        return row


async def test_debit_landing_before_timeout_claim_settles_round(tmp_path):
    store = SlowDebitReplyStore(tmp_path / "reply.db")
    session = await open_session(store, timeout=0.05)

    wager = await session.play("dice", 10)

    assert wager.debit_confirmed
    assert wager.settled
    row = store.get_wallet(session.user_id)
    assert row["main_balance"] == 90
    assert row["game_balance"] == 19.6
    assert len(store.get_transactions(session.user_id)) == 2
    assert session.wallet.balance == pytest.approx(109.6)
    assert [h["round_id"] for h in session.history["dice"]] == [wager.round_id]
    await asyncio.sleep(0.3)


class FlakyCreditStore(Database):
    credit_failures = 0

    def adjust_balance(self, user_id, amount, direction, bucket, idempotency_key=None):
        if direction == "increment" and self.credit_failures > 0:
            self.credit_failures -= 1
            raise ConnectionError("wallet service unavailable")
        return super().adjust_balance(user_id, amount, direction, bucket, idempotency_key)


async def test_credit_failure_then_retry(tmp_path):
    store = FlakyCreditStore(tmp_path / "flaky.db")
    store.credit_failures = 2
    session = await open_session(store, credit_attempts=2)

    with pytest.raises(SettlementCreditError) as excinfo:
        await session.play("dice", 10)

    round_id = excinfo.value.round_id
    assert round_id in session.pending_credits
    # Debit stands, so the cached wallet follows the store
    assert session.wallet.balance == pytest.approx(90)
    assert session.state is RoundState.IDLE

    wager = await session.retry_credit(round_id)

    assert wager.settled
    assert session.pending_credits == {}
    assert store.get_wallet(session.user_id)["game_balance"] == 19.6
    assert session.wallet.balance == pytest.approx(109.6)
    assert [h["round_id"] for h in session.history["dice"]] == [round_id]

    with pytest.raises(UnknownRoundError):
        await session.retry_credit(round_id)


class StallingCreditStore(Database):
    def adjust_balance(self, user_id, amount, direction, bucket, idempotency_key=None):
        if direction == "increment":
            time.sleep(0.2)
        return super().adjust_balance(user_id, amount, direction, bucket, idempotency_key)


async def test_cancel_while_crediting_keeps_payout_owed(tmp_path):
    store = StallingCreditStore(tmp_path / "stall.db")
    session = await open_session(store)

    task = asyncio.create_task(session.play("dice", 10))
    while not (session.current and session.current.debit_confirmed):
        await asyncio.sleep(0.01)
    round_id = session.current.round_id
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert round_id in session.pending_credits
    assert session.wallet.snapshot.stale
    assert session.state is RoundState.IDLE

    # The interrupted credit still lands; the retry must not pay twice
    await asyncio.sleep(0.3)
    wager = await session.retry_credit(round_id)

    assert wager.settled
    assert store.get_wallet(session.user_id)["game_balance"] == 19.6
    assert session.wallet.balance == pytest.approx(109.6)


class BrokenHistoryStore(Database):
    def record_round(self, entry):
        raise RuntimeError("disk full")


async def test_record_failure_reconciles(tmp_path):
    store = BrokenHistoryStore(tmp_path / "broken.db")
    session = await open_session(store)

    with pytest.raises(SettlementRecordError):
        await session.play("dice", 10)

    assert session.wallet.balance == pytest.approx(109.6)
    assert session.state is RoundState.IDLE


# ==================== History / wallet feed ====================


class UnreadableHistoryStore(Database):
    def list_recent_rounds(self, user_id, game_id, limit=10):
        raise ConnectionError("history unavailable")


async def test_history_failure_marks_stale(tmp_path):
    store = UnreadableHistoryStore(tmp_path / "history.db")
    session = await open_session(store)
    assert session.history_stale["dice"]

    wager = await session.play("dice", 10)

    assert wager.settled
    assert session.history["dice"] == []
    assert session.history_stale["dice"]


async def test_wallet_refresh_failure_keeps_cached_balance(store):
    session = await open_session(store)

    with patch.object(session.bridge, "get_wallet", side_effect=ConnectionError("down")):
        await session.play("dice", 10)

    assert session.wallet.snapshot.stale
    assert session.wallet.balance == pytest.approx(109.6)
    assert store.get_wallet(session.user_id)["game_balance"] == 19.6

    await session.refresh_wallet()
    assert not session.wallet.snapshot.stale


async def test_history_is_bounded(store):
    session = await open_session(store)
    session.history_limit = 3

    for _ in range(5):
        await session.play("dice", 1)

    assert len(session.history["dice"]) == 3
