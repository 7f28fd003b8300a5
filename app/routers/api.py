from fastapi import APIRouter, Request
from pydantic import BaseModel
from typing import Optional, Union
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.config import settings
from app.core.exceptions import InvalidBetError, UnknownGameError
from app.core.games import CoinSide
from app.core.idempotency import idempotent_request
from app.core.logger import get_logger
from app.core.odds import Direction, QuickAction, format_amount, quick_amount
from app.core.rng import TrueRNG
from app.core.round import PlayerSession
from app.core.security import require_user_id
from app.core.sessions import SessionRegistry
from app.core.websocket import ws_manager

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit.enabled)

logger = get_logger("api")

router = APIRouter()

sessions = SessionRegistry(listener_factory=ws_manager.listener_for)

# ==================== Request Models ====================

SELECTION_FIELDS = {"threshold", "direction", "side"}


class SelectRequest(BaseModel):
    threshold: Optional[int] = None
    direction: Optional[Direction] = None
    side: Optional[CoinSide] = None

    def changes(self) -> dict:
        return self.model_dump(include=SELECTION_FIELDS, exclude_none=True)


class PlayRequest(SelectRequest):
    # Strings are accepted so a non-numeric bet reaches bet validation
    bet: Union[float, str]
    client_seed: Optional[str] = None


# ==================== Helpers ====================

async def get_session(request: Request) -> PlayerSession:
    return await sessions.get(require_user_id(request))


def get_rate_limit() -> str:
    """Get rate limit string from config."""
    return settings.rate_limit.game_requests


def get_game(game_id: str):
    game = sessions.games.get(game_id)
    if game is None:
        raise UnknownGameError(f"Unknown game: {game_id}")
    return game

# ==================== Wallet Endpoints ====================

@router.get("/wallet")
async def get_wallet(request: Request):
    session = await get_session(request)
    # A round in flight owns the cached view until it reconciles
    if not session.busy:
        await session.refresh_wallet()
    return session.wallet.snapshot.to_dict(session.precision)

# ==================== Game Endpoints ====================

@router.get("/games")
async def list_games():
    return {"games": [game.info() for game in sessions.games.values()]}


@router.get("/games/dice/quote")
async def dice_quote(threshold: int = None, direction: Direction = None, bet: float = None):
    """Odds preview for a threshold and direction, clamped like the slider."""
    game = get_game("dice")
    changes = {"threshold": threshold, "direction": direction}
    selection = game.apply(game.default_selection(), {k: v for k, v in changes.items() if v is not None})
    quote = game.quote(selection)
    result = {"selection": selection.to_dict(), **quote.to_dict()}
    if bet is not None:
        if bet <= 0:
            raise InvalidBetError()
        result["potential_payout"] = format_amount(quote.potential_payout(bet))
    return result


@router.get("/games/{game_id}/state")
async def game_state(request: Request, game_id: str):
    session = await get_session(request)
    return session.to_dict(game_id)


@router.post("/games/{game_id}/select")
async def select(request: Request, game_id: str, data: SelectRequest):
    session = await get_session(request)
    selection = session.select(game_id, **data.changes())
    return {"selection": selection.to_dict(), **session.quote(game_id).to_dict()}


@router.post("/games/dice/toggle")
async def toggle_direction(request: Request):
    session = await get_session(request)
    selection = session.toggle_direction("dice")
    return {"selection": selection.to_dict(), **session.quote("dice").to_dict()}


@router.post("/games/{game_id}/play")
@limiter.limit(get_rate_limit)
@idempotent_request
async def play(request: Request, game_id: str, data: PlayRequest):
    session = await get_session(request)
    changes = data.changes()
    if changes:
        session.select(game_id, **changes)

    wager = await session.play(game_id, data.bet, data.client_seed)
    return {
        "round": wager.to_dict(),
        "wallet": session.wallet.snapshot.to_dict(session.precision),
        "history": session.history[game_id],
        "history_stale": session.history_stale[game_id],
    }


@router.get("/games/{game_id}/history")
async def history(request: Request, game_id: str, refresh: bool = False):
    session = await get_session(request)
    get_game(game_id)
    if refresh and not session.busy:
        await session.refresh_history(game_id)
    return {
        "game_id": game_id,
        "history": session.history[game_id],
        "stale": session.history_stale[game_id],
    }


@router.post("/rounds/{round_id}/retry-credit")
async def retry_credit(request: Request, round_id: str):
    session = await get_session(request)
    wager = await session.retry_credit(round_id)
    return {
        "round": wager.to_dict(),
        "wallet": session.wallet.snapshot.to_dict(session.precision),
    }

# ==================== Fairness & Helpers ====================

@router.get("/fairness/verify")
async def verify_round(server_seed: str, server_seed_hash: str, client_seed: str, nonce: int):
    return TrueRNG.verify(server_seed, server_seed_hash, client_seed, nonce)


@router.get("/quick-amount")
async def get_quick_amount(
    request: Request, action: QuickAction, current: float = 0.0, game_id: str = "dice"
):
    session = await get_session(request)
    game = session.game(game_id)
    return {"amount": quick_amount(action, current, session.wallet.balance, game.min_bet)}
