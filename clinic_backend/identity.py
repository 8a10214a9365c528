"""
Bearer tokens of the identity provider (HS256, ``sub`` = user id).

The core never sees passwords: a verified token is mapped to the user profile
stored at ``user:{sub}``, and the profile's role is the one that counts.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from . import config
from .entities import Actor
from .errors import Unauthorized
from .models import Role
from .services import get_user

logger = logging.getLogger(__name__)


def create_access_token(user_id: str, role: Role | None = None) -> str:
    """Development token for the CLI and tests, signed like the provider's ones."""
    issued = datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "iat": issued,
        "exp": issued + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    if role is not None:
        claims["role"] = role.value
    return jwt.encode(claims, config.JWT_SECRET, algorithm=config.JWT_ALG)


def resolve_actor(token: str) -> Actor:
    """
    Bearer token -> Actor.
    - bad signature, expired or without ``sub``: Unauthorized
    - valid token of a user with no profile here: Unauthorized ("Profile not found")
    """
    token = token.strip().strip('"').strip("'")
    try:
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
    except JWTError as exc:
        logger.warning("Rejected bearer token: %s", exc)
        raise Unauthorized("Unauthorized") from exc

    user_id = claims.get("sub")
    if not user_id:
        raise Unauthorized("Unauthorized")

    user = get_user(user_id)
    if user is None:
        logger.warning("Token subject %s has no profile", user_id)
        raise Unauthorized("Profile not found")
    return Actor(id=user.id, role=user.role)
