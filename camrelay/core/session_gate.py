"""Credential checks in front of streaming and capture operations."""
from __future__ import annotations

import logging
import time
from typing import Optional

from ..backend.directory import DirectoryKeys, DirectoryStore
from ..backend.tokens import TokenService
from ..errors import CredentialRevoked, Forbidden, InvalidCredential, Unauthenticated
from ..state import Session

logger = logging.getLogger(__name__)


class SessionGate:
    """
    Validates viewer credentials.

    Nothing is cached between calls: signature, expiry and the revocation
    record are all checked on every ``validate`` so a revocation takes effect
    on the next request.
    """

    def __init__(self, tokens: TokenService, directory: DirectoryStore, *, force_reauth: bool = False) -> None:
        self._tokens = tokens
        self._directory = directory
        self.force_reauth = force_reauth

    async def validate(self, credential: Optional[str]) -> Session:
        if not credential:
            raise Unauthenticated("missing session")

        claims = self._tokens.verify(credential)
        token_id = str(claims["jti"])
        if await self._directory.get(DirectoryKeys.revoked(token_id)) is not None:
            raise CredentialRevoked("session revoked", log_message=f"token {token_id} is revoked")

        return Session(
            subject=str(claims["sub"]),
            issued_at=float(claims.get("iat", 0)),
            expires_at=float(claims["exp"]),
            token_id=token_id,
            email=claims.get("email"),
        )

    async def authorize(self, credential: Optional[str], device_id: str) -> Session:
        """Validate and require the session to belong to ``device_id``."""
        session = await self.validate(credential)
        if session.subject != device_id:
            raise Forbidden("session not valid for this device", log_message=f"{session.subject} != {device_id}")
        return session

    async def revoke(self, credential: str) -> str:
        """Record the credential as revoked until its own expiry; returns the token id."""
        claims = self._tokens.decode_unsafe(credential)
        token_id = claims.get("jti")
        if not token_id:
            raise InvalidCredential("invalid session")
        expires_at = float(claims.get("exp") or time.time())
        await self._directory.set(
            DirectoryKeys.revoked(str(token_id)),
            {"subject": claims.get("sub"), "expiresAt": expires_at, "revokedAt": time.time()},
        )
        logger.info("Revoked session %s for %s", token_id, claims.get("sub"))
        return str(token_id)

    async def prune_revocations(self) -> int:
        """Delete revocation records whose credential has expired anyway."""
        now = time.time()
        pruned = 0
        for token_id in await self._directory.children(DirectoryKeys.REVOKED):
            key = DirectoryKeys.revoked(token_id)
            record = await self._directory.get(key)
            if not isinstance(record, dict) or float(record.get("expiresAt", 0)) <= now:
                await self._directory.delete(key)
                pruned += 1
        if pruned:
            logger.info("Pruned %d expired revocation record(s)", pruned)
        return pruned

    async def needs_challenge(self, device_id: str) -> bool:
        """Whether a start request for ``device_id`` must go through OTP first."""
        if self.force_reauth:
            return True
        return not await self._directory.get(DirectoryKeys.verified(device_id))


__all__ = ["SessionGate"]
