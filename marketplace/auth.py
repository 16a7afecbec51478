"""Authentication helpers and FastAPI security dependencies.

This module provides utilities to decode JWT tokens, a FastAPI
dependency `get_current_user` that validates the bearer token and
returns the corresponding `User` model instance from the database, and
`require_roles` for role-gated routes.

Token verification raises HTTPExceptions on failure so it can be used
directly inside route dependencies. Websocket routes use
`user_from_token`, which returns `None` instead of raising.
"""

from typing import Optional
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from sqlmodel import Session
from .config import settings
from .database import engine
from . import models, repositories

bearer_scheme = HTTPBearer()


def decode_token(token: str):
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail='invalid token')


def get_current_user(credentials: HTTPAuthorizationCredentials = Security(bearer_scheme)):
    """FastAPI dependency that returns the authenticated user.

    The function extracts the bearer token from the request, decodes it
    and performs a database lookup to return the `User` object. It raises
    an HTTPException(401) for any authentication issue.
    """
    token = credentials.credentials
    payload = decode_token(token)
    user_id = payload.get('user_id')
    if not user_id:
        raise HTTPException(status_code=401, detail='invalid token payload')
    with Session(engine) as session:
        user = repositories.UserRepository(session).get(user_id)
        if not user:
            raise HTTPException(status_code=401, detail='user not found')
        return user


def get_user_roles(user: models.User = Depends(get_current_user)) -> list:
    """Role names of the authenticated user, read from the database."""
    with Session(engine) as session:
        return repositories.RoleRepository(session).role_names_for_user(user.id)


def require_roles(*names: str):
    """Build a dependency that returns 403 unless the user holds one of `names`."""
    def _check(roles: list = Depends(get_user_roles)) -> list:
        if not set(names) & set(roles):
            raise HTTPException(status_code=403, detail=f"requires role: {' or '.join(names)}")
        return roles
    return _check


def user_from_token(token: Optional[str]) -> Optional[models.User]:
    """Resolve an access token to a `User`, or `None` when it is invalid."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        return None
    user_id = payload.get('user_id')
    if not user_id:
        return None
    with Session(engine) as session:
        return repositories.UserRepository(session).get(user_id)
