"""Session token helpers for account-scoped requests."""

import secrets
from datetime import timedelta

from jose import JWTError, jwt

from photoforge.config import Settings, settings
from photoforge.dates import utcnow

SESSION_TOKEN_TYPE = "photoforge_session"


def create_session_token(account_id: str, expires_hours: int | None = None) -> dict:
    now = utcnow()
    ttl_hours = int(expires_hours or settings.session_ttl_hours or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims = {
        "sub": account_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"token": token, "expires_at": int(expires_at.timestamp())}


def decode_session_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type")
    if not str(payload.get("sub", "")).strip():
        raise ValueError("Session token missing subject")
    return payload


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class SessionAuth:
    def current_session(self, authorization: str | None) -> str | None:
        token = bearer_token(authorization)
        if not token:
            return None
        try:
            payload = decode_session_token(token)
        except ValueError:
            return None
        return str(payload["sub"])


def cron_authorized(authorization: str | None, config: Settings) -> bool:
    if not config.is_production:
        return True
    if not config.cron_secret:
        return False
    return secrets.compare_digest(bearer_token(authorization) or "", config.cron_secret)
