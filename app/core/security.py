from typing import Optional

from fastapi import HTTPException, Response, status
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from starlette.requests import HTTPConnection

from app.config import settings

# Signed cookie carrying the player's wallet id
signer = TimestampSigner(settings.security.secret_key)


def create_session(user_id: str, response: Response) -> str:
    token = signer.sign(user_id.encode("utf-8")).decode("utf-8")
    response.set_cookie(
        key=settings.security.session_cookie,
        value=token,
        httponly=True,
        samesite="lax",
        max_age=settings.security.session_max_age_seconds,
    )
    return token


def delete_session(response: Response):
    response.delete_cookie(settings.security.session_cookie)


def get_session_user_id(conn: HTTPConnection) -> Optional[str]:
    """User id from the signed cookie, for HTTP requests and WebSockets alike."""
    token = conn.cookies.get(settings.security.session_cookie)
    if not token:
        return None
    try:
        value = signer.unsign(token, max_age=settings.security.session_max_age_seconds)
    except (SignatureExpired, BadSignature):
        return None
    return value.decode("utf-8")


def require_user_id(conn: HTTPConnection) -> str:
    user_id = get_session_user_id(conn)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not logged in",
        )
    return user_id
