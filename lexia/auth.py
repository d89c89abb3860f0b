"""
Bearer JWT handling. Sign-in lives with the auth provider; this service only
needs the stable user id carried in the token subject.
"""
from datetime import datetime, timedelta

from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from lexia.config import get_settings
from lexia.schemas.auth import TokenPayload

settings = get_settings()
security = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, expires_minutes: int = 60) -> str:
    expire = datetime.utcnow() + timedelta(minutes=expires_minutes)
    payload = {
        "sub": user_id,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_token(token: str) -> TokenPayload | None:
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
        )
        return TokenPayload(
            sub=payload["sub"],
            exp=payload["exp"],
            type=payload.get("type", "access"),
        )
    except (JWTError, KeyError):
        return None


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload.sub


def get_user_id_from_token(token: str) -> str | None:
    """For WebSocket: user id from token string. Returns None if invalid."""
    payload = decode_token(token)
    return payload.sub if payload else None
