from fastapi import APIRouter, HTTPException, Request, Response

from app.config import settings
from app.core.database import db
from app.core.exceptions import WalletNotFoundError
from app.core.logger import get_logger
from app.core.security import create_session, delete_session, get_session_user_id
from app.routers.api import limiter, sessions

logger = get_logger("auth")

router = APIRouter()


def get_auth_rate_limit() -> str:
    return settings.rate_limit.auth_requests


@router.post("/auth/guest")
@limiter.limit(get_auth_rate_limit)
async def guest_login(request: Request, response: Response):
    """Open a fresh wallet with the starting balance and sign the player in."""
    wallet = db.create_wallet()
    create_session(wallet["user_id"], response)
    logger.info(f"Guest wallet opened: {wallet['user_id']}")
    return {"success": True, "user_id": wallet["user_id"]}


@router.get("/auth/me")
async def me(request: Request):
    user_id = get_session_user_id(request)
    if not user_id:
        return {"authenticated": False}

    try:
        wallet = db.get_wallet(user_id)
    except WalletNotFoundError:
        return {"authenticated": False}

    return {
        "authenticated": True,
        "user_id": user_id,
        "main_balance": wallet["main_balance"],
        "game_balance": wallet["game_balance"],
    }


@router.post("/auth/logout")
async def logout(request: Request, response: Response):
    user_id = get_session_user_id(request)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not logged in")

    sessions.close(user_id)
    delete_session(response)
    return {"success": True}
