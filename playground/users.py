import os
import logging
from typing import Optional, Union

from fastapi import Depends, Request
from fastapi_users import FastAPIUsers, InvalidPasswordException
from fastapi_users.manager import BaseUserManager, IntegerIDMixin
from fastapi_users.authentication import (
    AuthenticationBackend, BearerTransport, CookieTransport, JWTStrategy,
)
from fastapi_users.db import SQLAlchemyUserDatabase

from .models import User
from .database import get_db
from .schemas import UserCreate

logger = logging.getLogger(__name__)


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


SECRET = os.getenv("SECRET", "").strip()
if not SECRET or SECRET == "CHANGE_ME_SECRET":
    raise RuntimeError("SECRET must be set; refusing to sign sessions with a placeholder")

SESSION_LIFETIME = int(os.getenv("SESSION_LIFETIME_SECONDS", str(3600 * 24)))
MIN_PASSWORD_LENGTH = 8


async def get_user_db(session=Depends(get_db)):
    yield SQLAlchemyUserDatabase(session, User)


class UserManager(IntegerIDMixin, BaseUserManager[User, int]):
    reset_password_token_secret = SECRET
    verification_token_secret = SECRET

    async def validate_password(self, password: str, user: Union[UserCreate, User]) -> None:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidPasswordException(
                reason=f"Password should be at least {MIN_PASSWORD_LENGTH} characters"
            )
        if user.email and user.email.split("@")[0].lower() in password.lower():
            raise InvalidPasswordException(reason="Password should not contain the e-mail name")

    async def on_after_register(self, user: User, request: Optional[Request] = None):
        logger.info("Analyst %s registered", user.id)

    async def on_after_login(self, user: User, request: Optional[Request] = None, response=None):
        logger.info("Analyst %s signed in", user.id)


async def get_user_manager(user_db=Depends(get_user_db)):
    yield UserManager(user_db)


def get_jwt_strategy() -> JWTStrategy:
    return JWTStrategy(secret=SECRET, lifetime_seconds=SESSION_LIFETIME)


# Browser sessions ride on a cookie; the Python client and scripts use bearer tokens.
cookie_backend = AuthenticationBackend(
    name="cookie",
    transport=CookieTransport(
        cookie_name="playground_session",
        cookie_max_age=SESSION_LIFETIME,
        cookie_secure=_bool_env("COOKIE_SECURE", default=False),
        cookie_httponly=True,
    ),
    get_strategy=get_jwt_strategy,
)

bearer_backend = AuthenticationBackend(
    name="bearer",
    transport=BearerTransport(tokenUrl="auth/bearer/login"),
    get_strategy=get_jwt_strategy,
)

fastapi_users = FastAPIUsers[User, int](get_user_manager, [cookie_backend, bearer_backend])

current_active_user = fastapi_users.current_user(active=True)
