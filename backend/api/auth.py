"""
Bearer JWT authentication.

Tokens are issued elsewhere; this module only decodes them (pyjwt, HS256)
into a Principal and exposes the FastAPI dependencies the routes use.
"""

from datetime import timedelta
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from pipeline.errors import Forbidden, Unauthorized
from schemas.commerce import utcnow


class Principal(BaseModel):
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str, secret: str, algorithm: str = "HS256") -> Principal:
    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.PyJWTError:
        raise Unauthorized("Not authorized, token failed")
    user_id = claims.get("sub") or claims.get("id")
    if not user_id:
        raise Unauthorized("Not authorized, token has no subject")
    return Principal(
        user_id=str(user_id),
        email=claims.get("email"),
        name=claims.get("name"),
        role=claims.get("role", "user"),
    )


def create_access_token(
    user_id: str,
    secret: str,
    role: str = "user",
    email: Optional[str] = None,
    name: Optional[str] = None,
    expires_in: timedelta = timedelta(hours=1),
    algorithm: str = "HS256",
) -> str:
    """Used by tests and local tooling; production tokens come from the auth service"""
    claims = {"sub": user_id, "role": role, "exp": utcnow() + expires_in}
    if email:
        claims["email"] = email
    if name:
        claims["name"] = name
    return jwt.encode(claims, secret, algorithm=algorithm)


def _decode_from_request(request: Request, credentials: HTTPAuthorizationCredentials) -> Principal:
    config = request.app.state.container.config
    return decode_token(credentials.credentials, config.JWT_SECRET, config.JWT_ALGORITHM)


async def optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[Principal]:
    """Guest checkout: no header means no principal, a bad token is still rejected"""
    if credentials is None:
        return None
    return _decode_from_request(request, credentials)


async def require_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    if credentials is None:
        raise Unauthorized("Not authorized, no token")
    return _decode_from_request(request, credentials)


async def require_admin(principal: Principal = Depends(require_user)) -> Principal:
    if not principal.is_admin:
        raise Forbidden("Not authorized as an admin")
    return principal
