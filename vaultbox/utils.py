# vaultbox/utils.py
import hashlib
import secrets
from datetime import datetime, timezone
from jose import jwt, JWTError

from vaultbox.config import SESSION_SIGN_KEY, SESSION_ALG

def utcnow() -> datetime:
    """Naive UTC, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def sign_token(payload: dict) -> str:
    """Return a compact JWT for an owner session payload."""
    return jwt.encode(payload, SESSION_SIGN_KEY, algorithm=SESSION_ALG)

def verify_token(token: str) -> dict:
    try:
        return jwt.decode(token, SESSION_SIGN_KEY, algorithms=[SESSION_ALG])
    except JWTError:
        return {}

def hash_value(val: str) -> str:
    return hashlib.sha256(val.encode()).hexdigest()

def new_access_token() -> str:
    # opaque bearer credential; only its hash is stored
    return secrets.token_urlsafe(32)

def new_verification_code() -> str:
    return "-".join(secrets.token_hex(2).upper() for _ in range(4))
