"""Command/response correlation over a push-only device connection."""
from __future__ import annotations

import asyncio
import itertools
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..errors import CommandTimeout, DeviceOffline, TransportFailure, UnknownCommand
from ..state import CommandState
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class PendingCommand:
    token: str
    device_id: str
    connection_id: int
    command: str
    deadline: float
    tokenized: bool = True
    sequence: int = 0
    created_at: float = field(default_factory=time.time)
    state: CommandState = CommandState.CREATED
    result: Optional[bytes] = None
    error: Optional[str] = None
    done: asyncio.Event = field(default_factory=asyncio.Event)
    timer: Optional[asyncio.TimerHandle] = None


class CommandCorrelator:
    """
    Issues tagged commands and resolves them when the device answers.

    Every command gets a deadline timer, so it always reaches a terminal state.
    Terminal commands stay readable for ``retention`` seconds so a caller that
    waits late still sees the outcome.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        *,
        default_timeout: float = 10.0,
        retention: float = 30.0,
    ) -> None:
        self._registry = registry
        self._default_timeout = default_timeout
        self._retention = retention
        self._commands: Dict[str, PendingCommand] = {}
        self._counter = itertools.count(1)

    async def issue(
        self,
        identity: str,
        command: str,
        timeout: Optional[float] = None,
        *,
        tokenized: Optional[bool] = None,
        **arguments: Any,
    ) -> str:
        """Send ``command`` to the device and return its correlation token."""
        connection = self._registry.lookup(identity)
        if connection is None:
            raise DeviceOffline(identity)

        if tokenized is None:
            tokenized = connection.supports_tokens
        timeout = self._default_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()

        sequence = next(self._counter)
        token = f"{sequence:x}-{secrets.token_hex(8)}"
        pending = PendingCommand(
            token=token,
            device_id=identity,
            connection_id=connection.connection_id,
            command=command,
            deadline=time.time() + timeout,
            tokenized=tokenized,
            sequence=sequence,
        )
        pending.timer = loop.call_later(timeout, self._expire, token)
        self._commands[token] = pending

        message: Dict[str, Any] = {"type": "cmd", "cmd": command, **arguments}
        if tokenized:
            message["id"] = token
        try:
            await connection.transport.send_json(message)
        except Exception as e:
            logger.warning("Failed to send %s to %s: %s", command, identity, e)
            self._finish(pending, CommandState.FAILED, error=f"send failed: {e}")
            raise TransportFailure("camera connection lost", log_message=f"send to {identity} failed: {e}") from e

        logger.debug("Issued %s to %s (token=%s, timeout=%.1fs)", command, identity, token, timeout)
        return token

    async def wait(self, token: str) -> bytes:
        """Suspend until the command for ``token`` is terminal and return its payload."""
        pending = self._commands.get(token)
        if pending is None:
            raise UnknownCommand("unknown command", log_message=f"no command for token {token}")

        # The deadline timer guarantees progress; the outer bound covers a stalled loop.
        slack = max(0.0, pending.deadline - time.time()) + 1.0
        try:
            await asyncio.wait_for(pending.done.wait(), timeout=slack)
        except asyncio.TimeoutError:
            self._expire(token)

        self._commands.pop(token, None)
        if pending.state is CommandState.FULFILLED:
            return pending.result or b""
        if pending.state is CommandState.EXPIRED:
            raise CommandTimeout("camera did not answer in time", log_message=f"{pending.command} to {pending.device_id} expired")
        raise TransportFailure(
            "camera connection lost",
            log_message=f"{pending.command} to {pending.device_id} failed: {pending.error}",
        )

    async def request(self, identity: str, command: str, timeout: Optional[float] = None, **arguments: Any) -> bytes:
        token = await self.issue(identity, command, timeout, **arguments)
        return await self.wait(token)

    def resolve(self, token: str, payload: bytes) -> bool:
        """Fulfil the command for ``token``; only the first resolution counts."""
        pending = self._commands.get(token)
        if pending is None or pending.state.terminal:
            logger.debug("Dropping late or duplicate response for token %s", token)
            return False
        self._finish(pending, CommandState.FULFILLED, result=payload)
        return True

    def reject(self, token: str, reason: str) -> bool:
        pending = self._commands.get(token)
        if pending is None or pending.state.terminal:
            return False
        self._finish(pending, CommandState.FAILED, error=reason)
        return True

    def resolve_latest(self, identity: str, payload: bytes) -> bool:
        """Fulfil the most recent untokenized pending command of ``identity``."""
        candidates = [
            pending
            for pending in self._commands.values()
            if pending.device_id == identity and not pending.tokenized and not pending.state.terminal
        ]
        if not candidates:
            return False
        latest = max(candidates, key=lambda pending: pending.sequence)
        self._finish(latest, CommandState.FULFILLED, result=payload)
        return True

    def fail_all(self, identity: str, *, connection_id: Optional[int] = None, reason: str = "connection closed") -> int:
        """Force every pending command of ``identity`` (optionally one connection) to FAILED."""
        failed = 0
        for pending in list(self._commands.values()):
            if pending.device_id != identity or pending.state.terminal:
                continue
            if connection_id is not None and pending.connection_id != connection_id:
                continue
            self._finish(pending, CommandState.FAILED, error=reason)
            failed += 1
        if failed:
            logger.info("Failed %d pending command(s) for %s: %s", failed, identity, reason)
        return failed

    def state_of(self, token: str) -> Optional[CommandState]:
        pending = self._commands.get(token)
        return pending.state if pending else None

    def pending_count(self, identity: Optional[str] = None) -> int:
        return sum(
            1
            for pending in self._commands.values()
            if not pending.state.terminal and (identity is None or pending.device_id == identity)
        )

    def _expire(self, token: str) -> None:
        pending = self._commands.get(token)
        if pending is None or pending.state.terminal:
            return
        logger.info("Command %s to %s expired", pending.command, pending.device_id)
        self._finish(pending, CommandState.EXPIRED)

    def _finish(
        self,
        pending: PendingCommand,
        state: CommandState,
        *,
        result: Optional[bytes] = None,
        error: Optional[str] = None,
    ) -> None:
        if pending.state.terminal:
            return
        pending.state = state
        pending.result = result
        pending.error = error
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None
        pending.done.set()
        try:
            asyncio.get_running_loop().call_later(self._retention, self._discard, pending)
        except RuntimeError:
            self._discard(pending)

    def _discard(self, pending: PendingCommand) -> None:
        if self._commands.get(pending.token) is pending:
            del self._commands[pending.token]


__all__ = ["CommandCorrelator", "PendingCommand"]
