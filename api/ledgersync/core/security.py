import uuid
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from ledgersync.core.config import settings

_bearer = HTTPBearer(auto_error=False)


# ─── JWT tokens ────────────────────────────────────────
def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=30))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.api_secret_key, algorithm=settings.algorithm)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.api_secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None


def create_oauth_state(team_id: str, provider: str) -> str:
    """Signed, short-lived ``state`` for an OAuth consent round trip."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.accounting_oauth_state_minutes)
    payload = {
        "team_id": team_id,
        "provider": provider,
        "nonce": uuid.uuid4().hex,
        "exp": expire,
        "type": "oauth_state",
    }
    return jwt.encode(payload, settings.api_secret_key, algorithm=settings.algorithm)


def decode_oauth_state(state: str, provider: str) -> str | None:
    """Team id carried by a consent ``state`` issued for ``provider``, or None."""
    payload = decode_token(state)
    if not payload or payload.get("type") != "oauth_state" or payload.get("provider") != provider:
        return None
    return payload.get("team_id")


def get_current_team_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> uuid.UUID:
    """Resolve the team the caller acts for from the bearer token's ``team_id`` claim."""
    payload = decode_token(credentials.credentials) if credentials else None
    if not payload or payload.get("type") != "access" or not payload.get("team_id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing access token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return uuid.UUID(payload["team_id"])
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid team claim")


# ─── Fernet encryption (for provider OAuth tokens at rest) ──────
def get_fernet() -> Fernet:
    return Fernet(settings.encryption_key.encode())


def encrypt_value(value: str) -> str:
    return get_fernet().encrypt(value.encode()).decode()


def decrypt_value(encrypted: str) -> str:
    return get_fernet().decrypt(encrypted.encode()).decode()
