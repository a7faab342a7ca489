from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

import jwt

from offerguard.core.config import settings


class TokenError(Exception):
    pass


# -------------------------
# Random secrets
# -------------------------
def generate_token(nbytes: int = 32) -> str:
    """Hex-encoded random bearer secret (staff / onboarding QR)."""
    return secrets.token_hex(nbytes)


def generate_otc() -> str:
    return secrets.token_hex(16)


# -------------------------
# One-way hashing
# -------------------------
def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_identifier(value: str) -> str:
    # BSSIDs arrive as AA-BB-CC..., aa:bb:cc... or with stray spaces
    return (value or "").strip().lower().replace("-", ":")


def hash_identifier(value: str) -> str:
    """Keyed hash for low-entropy identifiers (BSSID, NFC UID, device fingerprint).

    A plain SHA-256 of a MAC address is trivially brute-forced, so the pepper
    keeps stored values useless outside this service.
    """
    return sign(normalize_identifier(value))


# -------------------------
# HMAC signing
# -------------------------
def sign(message: str, key: str | None = None) -> str:
    secret = (key or settings.IDENTIFIER_PEPPER).encode("utf-8")
    return hmac.new(secret, message.encode("utf-8"), hashlib.sha256).hexdigest()


def constant_time_equals(a: str | None, b: str | None) -> bool:
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# -------------------------
# Identity JWTs (issued by the auth service)
# -------------------------
def create_access_token(*, user_id: int, role: str, otl: int = 0) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "otl": otl,
        "type": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.JWT_ACCESS_MINUTES)).timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.ExpiredSignatureError as e:
        raise TokenError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise TokenError("Invalid token") from e
