"""Authentication helpers and FastAPI security dependencies.

This module decodes bearer JWT tokens, exposes `get_current_user`
(which loads the `User` row for the token) and the `require_roles`
dependency factory used to gate endpoints by role.

Token verification raises HTTPExceptions on failure so it can be used
directly inside route dependencies: 401 for a missing or bad token,
403 when the user's role is not allowed.
"""

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from sqlmodel import Session
from .services import JWT_SECRET, JWT_ALGORITHM
from .database import get_session
from . import models, repositories

bearer_scheme = HTTPBearer()


def decode_token(token: str):
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail='invalid token')


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(bearer_scheme),
    db: Session = Depends(get_session),
) -> models.User:
    """FastAPI dependency that returns the authenticated user.

    The role is read from the database rather than the token so a role
    change takes effect without re-issuing tokens.
    """
    payload = decode_token(credentials.credentials)
    user_id = payload.get('user_id')
    if not user_id:
        raise HTTPException(status_code=401, detail='invalid token payload')
    user = repositories.UserRepository(db).get(user_id)
    if not user:
        raise HTTPException(status_code=401, detail='user not found')
    return user


def require_roles(*allowed: str):
    """Dependency factory: the current user must hold one of `allowed` roles."""
    def checker(user: models.User = Depends(get_current_user)) -> models.User:
        if user.role not in allowed:
            raise HTTPException(status_code=403, detail='Insufficient role')
        return user
    return checker
