from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from floorline.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        subject = str(payload.get("sub", "anonymous"))
        roles = payload.get("roles", ["user"])
        if not isinstance(roles, list):
            roles = ["user"]
        return AuthUser(sub=subject, roles=[str(role) for role in roles])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])


async def get_current_customer(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    if "customer" not in user.roles or not user.sub.isdigit():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Customer authentication required")
    return user


def create_access_token(subject: str, roles: list[str]) -> str:
    settings = get_settings()
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_ttl_minutes)
    claims = {"sub": subject, "roles": roles, "exp": expires_at}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
