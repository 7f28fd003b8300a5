"""
Player session registry.

One PlayerSession per player; created and loaded on first use, so the
wallet and history are fetched once when the player arrives and then after
every round. Sessions are dropped when the player's last socket closes or
after they have gone unused for a while, unless a round still needs them.
"""

import asyncio
import time
from typing import Callable, Dict, Optional

from app.config import settings
from app.core.economy import SettlementBridge
from app.core.games import CoinflipGame, DiceGame, WagerGame
from app.core.logger import get_logger
from app.core.round import PlayerSession

logger = get_logger("sessions")


def build_games() -> Dict[str, WagerGame]:
    games = [DiceGame(), CoinflipGame()]
    return {game.game_id: game for game in games}


class SessionRegistry:
    def __init__(
        self,
        bridge: Optional[SettlementBridge] = None,
        games: Optional[Dict[str, WagerGame]] = None,
        listener_factory: Optional[Callable[[str], Callable]] = None,
        idle_seconds: Optional[float] = None,
    ):
        self.bridge = bridge
        self.games = games if games is not None else build_games()
        self.listener_factory = listener_factory
        self.idle_seconds = (
            idle_seconds if idle_seconds is not None else settings.security.session_idle_seconds
        )
        self._sessions: Dict[str, PlayerSession] = {}
        self._last_seen: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> PlayerSession:
        self.evict_idle()
        session = self._sessions.get(user_id)
        if session is not None:
            self._last_seen[user_id] = time.monotonic()
            return session

        async with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                listener = self.listener_factory(user_id) if self.listener_factory else None
                session = PlayerSession(
                    user_id,
                    self.games,
                    bridge=self.bridge or SettlementBridge(),
                    listener=listener,
                )
                # A missing wallet raises here and the session is not kept
                await session.load()
                self._sessions[user_id] = session
                logger.info(f"Session opened for {user_id}")
            self._last_seen[user_id] = time.monotonic()
        return session

    def release(self, user_id: str) -> bool:
        """Drop a session unless a round is running or a payout is owed."""
        session = self._sessions.get(user_id)
        if session is None or session.busy or session.pending_credits:
            return False
        self.close(user_id)
        return True

    def evict_idle(self, now: Optional[float] = None) -> int:
        now = time.monotonic() if now is None else now
        idle = [
            user_id
            for user_id, seen in self._last_seen.items()
            if now - seen > self.idle_seconds
        ]
        return sum(1 for user_id in idle if self.release(user_id))

    def close(self, user_id: str):
        self._last_seen.pop(user_id, None)
        session = self._sessions.pop(user_id, None)
        if session is not None:
            session.close()
            logger.info(f"Session closed for {user_id}")

    def close_all(self):
        for user_id in list(self._sessions):
            self.close(user_id)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
