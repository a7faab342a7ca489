from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from offerguard.core.security import TokenError, decode_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


@dataclass(frozen=True)
class Actor:
    user_id: int
    role: str
    otl: int = 0

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"


async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    try:
        payload = decode_token(token)
    except TokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    user_id = payload.get("sub") or payload.get("user_id")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Token missing user id (sub/user_id)")

    try:
        user_id_int = int(user_id)
        otl = int(payload.get("otl") or 0)
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid claims in token")

    return Actor(user_id=user_id_int, role=str(payload.get("role") or "USER").upper(), otl=otl)
