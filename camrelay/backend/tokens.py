"""HS256 session credentials."""
from __future__ import annotations

import logging
import math
import secrets
import time
from typing import Any, Dict

import jwt

from ..errors import CredentialExpired, InvalidCredential

logger = logging.getLogger(__name__)


class TokenService:
    """Signs and verifies session credentials with PyJWT."""

    def __init__(self, secret: str, *, algorithm: str = "HS256", leeway: float = 0.0) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._leeway = leeway

    def sign(self, claims: Dict[str, Any], ttl: float) -> str:
        now = time.time()
        payload = {
            **claims,
            "iat": int(now),
            # exp is checked in whole seconds; rounding up never shortens a session
            "exp": math.ceil(now + ttl),
            "jti": claims.get("jti") or secrets.token_hex(16),
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                leeway=self._leeway,
                options={"require": ["exp", "sub", "jti"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise CredentialExpired("session expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.debug("Rejected credential: %s", exc)
            raise InvalidCredential("invalid session") from exc

    def decode_unsafe(self, token: str) -> Dict[str, Any]:
        """Read claims without checking signature or expiry."""
        try:
            return jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
        except jwt.InvalidTokenError as exc:
            raise InvalidCredential("invalid session") from exc


__all__ = ["TokenService"]
