"""Operator authentication for the web console.

Security model:
- Single operator account configured through the environment
- Credentials compared in constant time
- JWT (HS256) issued on login and stored in an HttpOnly ``token`` cookie
- Every route except the login flow requires a valid, unexpired token
"""
from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta, timezone

from aiohttp import web
from jose import JWTError, jwt

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = 2
COOKIE_NAME = "token"


class OperatorAuth:
    """Verifies operator credentials and manages session tokens."""

    def __init__(
        self,
        jwt_secret: str,
        username: str,
        password: str,
        expiration_hours: float = JWT_EXPIRATION_HOURS,
    ) -> None:
        if not jwt_secret:
            raise ValueError("JWT secret must not be empty")
        self._secret = jwt_secret
        self._username = username
        self._password = password
        self._expiration = timedelta(hours=expiration_hours)

    @property
    def max_age(self) -> int:
        return int(self._expiration.total_seconds())

    def verify_credentials(self, username: str, password: str) -> bool:
        user_ok = hmac.compare_digest(username.encode("utf-8"), self._username.encode("utf-8"))
        pass_ok = hmac.compare_digest(password.encode("utf-8"), self._password.encode("utf-8"))
        return user_ok and pass_ok

    def create_token(self, username: str) -> str:
        """Generate a JWT token with expiration."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": username,
            "iat": now,
            "exp": now + self._expiration,
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def verify_token(self, token: str) -> bool:
        """Return True if *token* is a valid, unexpired token signed by us."""
        try:
            jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM])
            return True
        except JWTError:
            return False

    def is_authenticated(self, request: web.Request) -> bool:
        token = request.cookies.get(COOKIE_NAME, "")
        if not token:
            return False
        return self.verify_token(token)
