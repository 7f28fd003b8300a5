"""
Cyber Dice Main Application Entry Point
FastAPI wagering service with WebSocket round updates.
"""

import sys
from pathlib import Path

# Add parent directory to path so imports work when running directly
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent.parent))

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import uvicorn
import orjson as json
import time
from collections import deque

from app.core.logger import init_logging, get_logger
from app.config import settings
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from app.routers import api
from app.routers.auth import router as auth_router
from app.core.exceptions import WagerError
from app.core.security import get_session_user_id
from app.core.websocket import ws_manager, normalize_ws_close_code

# Initialize logging first
init_logging(
    level=settings.logging.level,
    log_to_file=settings.logging.log_to_file,
    formatter=settings.logging.formatter,
    log_file_path=settings.paths.get_log_path(),
)
logger = get_logger("main")
ws_logger = get_logger("websocket")


# WebSocket Rate Limiting
WS_MAX_MESSAGES = 10  # Max messages per user
WS_RATE_LIMIT_SECONDS = 2  # In this time window
ws_rate_limiter = {}  # In-memory store: user_id -> deque of timestamps, shared by all tabs


# ==================== Security Headers Middleware ====================


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; connect-src 'self' ws: wss:; frame-ancestors 'none'"
        )

        return response


# ==================== Application Setup ====================


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.server.name,
        docs_url="/docs" if settings.server.debug else None,
        redoc_url=None,
    )

    # Add slowapi rate limiter
    app.state.limiter = api.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Add security headers middleware
    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware (for development)
    if settings.server.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Include routers
    app.include_router(auth_router)
    app.include_router(api.router, prefix="/api")

    return app


app = create_app()


@app.on_event("shutdown")
def shutdown_event():
    # Cancels running suspense timers; their rounds roll back
    api.sessions.close_all()


logger.info(f"Application '{settings.server.name}' initialized")
logger.info(f"Debug mode: {settings.server.debug}")


# ==================== WebSocket Endpoint ====================


def _drop_connection(websocket: WebSocket, user_id: str):
    ws_manager.disconnect(websocket, user_id)
    # Other tabs keep the limiter and the session
    if user_id not in ws_manager.active_connections:
        ws_rate_limiter.pop(user_id, None)
        api.sessions.release(user_id)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for round updates.
    Pushes round_state, suspense_tick, round_result, round_error and
    balance_update events. Accepts "ping" and "state" messages.
    """
    user_id = get_session_user_id(websocket)
    client_ip = websocket.client.host if websocket.client else None

    if not user_id:
        ws_logger.warning(
            "WebSocket connection denied due to invalid auth",
            extra={"client_ip": client_ip},
        )
        await websocket.accept()
        await websocket.send_bytes(json.dumps({"type": "error", "message": "Authentication failed"}))
        await websocket.close(code=1008)
        return

    await ws_manager.connect(websocket, user_id)
    ws_logger.info(
        "WebSocket connected", extra={"user_id": user_id, "client_ip": client_ip}
    )

    try:
        while True:
            data = await websocket.receive_text()

            current_time = time.time()
            user_timestamps = ws_rate_limiter.setdefault(user_id, deque())

            # Remove old timestamps
            while (
                user_timestamps
                and user_timestamps[0] < current_time - WS_RATE_LIMIT_SECONDS
            ):
                user_timestamps.popleft()

            if len(user_timestamps) >= WS_MAX_MESSAGES:
                ws_logger.warning(
                    "WebSocket rate limit exceeded",
                    extra={"user_id": user_id, "client_ip": client_ip},
                )
                continue

            user_timestamps.append(current_time)

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                continue

            msg_type = message.get("type")
            if msg_type == "ping":
                await websocket.send_bytes(json.dumps({"type": "pong"}))
            elif msg_type == "state":
                session = await api.sessions.get(user_id)
                game_id = message.get("game_id")
                if game_id not in session.games:
                    game_id = None
                await websocket.send_bytes(
                    json.dumps({"type": "state", **session.to_dict(game_id)})
                )

    except WebSocketDisconnect as e:
        _drop_connection(websocket, user_id)
        ws_logger.info(
            "WebSocket disconnected",
            extra={
                "user_id": user_id,
                "client_ip": client_ip,
                "ws_disconnect_code": e.code,
                "ws_disconnect_reason": normalize_ws_close_code(e.code),
            },
        )
    except Exception as e:
        _drop_connection(websocket, user_id)
        ws_logger.error(
            "WebSocket error",
            extra={"user_id": user_id, "client_ip": client_ip, "error": str(e)},
        )


# ==================== Exception Handlers ====================


@app.exception_handler(WagerError)
async def wager_exception_handler(request: Request, exc: WagerError):
    """Round, wallet and settlement failures carry their own status code."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    else:
        logger.info(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions gracefully."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.server.debug else None,
        },
    )


# ==================== Main Entry Point ====================

if __name__ == "__main__":
    logger.info(f"Starting server on {settings.server.host}:{settings.server.port}")
    uvicorn.run(
        "app.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.debug,
    )
