"""Bearer-token identity for WebSocket and REST callers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from jwt import PyJWTError

from .errors import AuthError
from .protocol import MAX_USER_ID

DEFAULT_TOKEN_TTL = timedelta(hours=24)


def extract_bearer(authorization: str | None) -> str | None:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]


class TokenAuthenticator:
    """Validates HMAC-signed JWTs carrying a ``userId`` claim."""

    def __init__(
        self, secret: str, algorithm: str = "HS256", issuer: str | None = None
    ) -> None:
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self._secret = secret
        self.algorithm = algorithm
        self.issuer = issuer

    def authenticate(self, token: str | None) -> int:
        """Return the user id carried by ``token`` or raise AuthError."""
        if not token:
            raise AuthError("Missing token")
        options: dict[str, Any] = {"require": ["exp"]}
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options=options,
            )
        except PyJWTError as exc:
            raise AuthError(f"Invalid token: {exc}") from exc

        user_id = claims.get("userId", claims.get("sub"))
        try:
            user_id = int(user_id)
        except (TypeError, ValueError) as exc:
            raise AuthError("Token carries no usable user id") from exc
        if not 0 < user_id <= MAX_USER_ID:
            raise AuthError("Token carries no usable user id")
        return user_id

    def issue(
        self,
        user_id: int,
        username: str | None = None,
        ttl: timedelta = DEFAULT_TOKEN_TTL,
    ) -> str:
        """Sign a token for ``user_id`` (used by tests and local tooling)."""
        now = datetime.now(timezone.utc)
        claims: dict[str, Any] = {
            "userId": user_id,
            "iat": now,
            "nbf": now,
            "exp": now + ttl,
        }
        if username is not None:
            claims["username"] = username
        if self.issuer:
            claims["iss"] = self.issuer
        return jwt.encode(claims, self._secret, algorithm=self.algorithm)
