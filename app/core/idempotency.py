"""
Idempotency helpers.

Per-round keys make the settlement debit and credit safe to retry, and the
request decorator stops a replayed play request from starting a second round.
"""

from functools import wraps
from fastapi import Request, HTTPException
from app.core.database import db


def round_key(round_id: str, step: str) -> str:
    """Idempotency key for one settlement step of one round."""
    return f"{round_id}:{step}"


def idempotent_request(func):
    """
    Decorator to ensure a request is processed only once.

    Checks for an 'Idempotency-Key' header and uses it to prevent
    re-processing of the same request.

    Raises:
        HTTPException(400): If 'Idempotency-Key' header is missing.
        HTTPException(409): If the key has already been processed.
    """
    @wraps(func)
    async def wrapper(request: Request, *args, **kwargs):
        idempotency_key = request.headers.get("Idempotency-Key")

        if not idempotency_key:
            raise HTTPException(
                status_code=400, detail="Idempotency-Key header is required"
            )

        # Claimed before processing so a concurrent replay is refused
        if not db.mark_key_as_used(f"request:{idempotency_key}"):
            raise HTTPException(
                status_code=409,
                detail="This request has already been processed.",
            )

        return await func(request, *args, **kwargs)

    return wrapper
