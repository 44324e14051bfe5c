"""
Caller identity resolved from identity-provider bearer tokens.

The provider signs JWTs with the shared secret. ``sub`` is the user id and
``is_anonymous`` marks ephemeral sessions. A token resolves to exactly one
of two caller types, and services dispatch on the type rather than on a
flag.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from checkin_engine.core.config import get_settings
from checkin_engine.core.exceptions import NotAuthenticated
from checkin_engine.core.logging import bind_caller, get_logger

logger = get_logger(__name__)
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class PermanentCaller:
    user_id: str

    @property
    def subject_id(self) -> str:
        return self.user_id

    @property
    def kind(self) -> str:
        return "permanent"


@dataclass(frozen=True)
class AnonymousCaller:
    ephemeral_id: str

    @property
    def subject_id(self) -> str:
        return self.ephemeral_id

    @property
    def kind(self) -> str:
        return "anonymous"


CallerIdentity = Union[PermanentCaller, AnonymousCaller]


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a token the way the identity provider does. Used by tests and load scripts."""
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode["exp"] = expire
    if settings.TOKEN_AUDIENCE and "aud" not in to_encode:
        to_encode["aud"] = settings.TOKEN_AUDIENCE
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_caller(token: str) -> CallerIdentity:
    """Verify a bearer token and build the caller identity. Raises NotAuthenticated."""
    settings = get_settings()
    options = {"verify_aud": settings.TOKEN_AUDIENCE is not None}
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.TOKEN_AUDIENCE,
            options=options,
        )
    except JWTError as e:
        logger.warning("token_rejected", reason=str(e))
        raise NotAuthenticated("Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise NotAuthenticated("Invalid token")

    if payload.get("is_anonymous", False):
        return AnonymousCaller(ephemeral_id=str(subject))
    return PermanentCaller(user_id=str(subject))


async def get_optional_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[CallerIdentity]:
    if credentials is None:
        return None
    caller = decode_caller(credentials.credentials)
    bind_caller(caller.subject_id, caller.kind)
    return caller


async def get_current_caller(
    caller: Optional[CallerIdentity] = Depends(get_optional_caller),
) -> CallerIdentity:
    if caller is None:
        raise NotAuthenticated("Missing authorization")
    return caller
