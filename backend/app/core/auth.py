from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from app.core.config import Settings, get_settings


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

LOCAL_PRINCIPAL_ID = "local"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


@dataclass(frozen=True)
class UserContext:
    id: str
    username: Optional[str]
    role: Role
    auth_enabled: bool

    def is_elevated(self, settings: Optional[Settings] = None) -> bool:
        settings = settings or get_settings()
        return self.role.value in settings.elevated_roles


# Token utilities


def create_access_token(
    subject: str,
    settings: Settings,
    role: Role,
    username: Optional[str] = None,
    expires_delta: timedelta = timedelta(minutes=30),
) -> str:
    payload: Dict[str, Any] = {
        "sub": subject,
        "role": role.value,
        "type": "access",
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    if username:
        payload["username"] = username
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "invalid_token",
                "message": "Could not validate credentials",
            },
        ) from exc


# Current principal dependencies


async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    settings: Settings = Depends(get_settings),
) -> UserContext:
    if not settings.auth_enabled:
        return UserContext(
            id=LOCAL_PRINCIPAL_ID,
            username=None,
            role=Role.SUPER_ADMIN,
            auth_enabled=False,
        )

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "authentication_required",
                "message": "Authentication credentials were not provided.",
            },
        )

    payload = decode_token(token, settings)
    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "invalid_token", "message": "Invalid token type."},
        )

    subject = payload.get("sub")
    role_value = payload.get("role")
    if subject is None or role_value is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "invalid_token", "message": "Malformed token payload."},
        )

    try:
        role = Role(role_value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "invalid_token", "message": "Unknown role in token."},
        )

    return UserContext(
        id=str(subject),
        username=payload.get("username"),
        role=role,
        auth_enabled=True,
    )


def require_elevated():
    async def dependency(
        current_user: UserContext = Depends(get_current_user),
        settings: Settings = Depends(get_settings),
    ) -> None:
        if not settings.auth_enabled:
            return

        if not current_user.is_elevated(settings):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "forbidden",
                    "message": "You do not have permission to perform this action.",
                    "current_role": current_user.role.value,
                },
            )

    return dependency
