from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from gradely.config import JWT_ALGORITHM, JWT_SECRET_KEY, access_token_ttl


def create_access_token(subject: str, role: str, expires_delta: timedelta | None = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "role": role,
        "token_type": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + (expires_delta or access_token_ttl())).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid token") from exc

    token_type = payload.get("token_type")
    if token_type and token_type != "access":
        raise ValueError("Invalid token")
    return payload
