from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt

from leaseledger.core.config import settings


# ─── JWT tokens ────────────────────────────────────────
def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.api_secret_key, algorithm=settings.algorithm)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.api_secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None


# ─── Signed download tokens ────────────────────────────
def create_download_token(public_id: str, ttl_seconds: int) -> str:
    expire = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
    payload = {"sub": public_id, "exp": expire, "type": "download"}
    return jwt.encode(payload, settings.api_secret_key, algorithm=settings.algorithm)


def verify_download_token(token: str, public_id: str) -> bool:
    payload = decode_token(token)
    if not payload or payload.get("type") != "download":
        return False
    return payload.get("sub") == public_id


# ─── Fernet encryption (for stored uploads at rest) ────
def get_fernet() -> Fernet:
    return Fernet(settings.encryption_key.encode())


def encrypt_bytes(data: bytes) -> bytes:
    return get_fernet().encrypt(data)


def decrypt_bytes(data: bytes) -> bytes | None:
    try:
        return get_fernet().decrypt(data)
    except InvalidToken:
        return None
