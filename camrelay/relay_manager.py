"""Relay orchestration: wires registry, cache, fan-out, correlation and liveness."""
from __future__ import annotations

import asyncio
import base64
import binascii
import itertools
import json
import logging
import time
from typing import Any, Dict, Iterator, Optional

from .backend.directory import DirectoryKeys, DirectoryStore, InMemoryDirectory
from .backend.notifier import NotificationSender, build_notifier
from .backend.tokens import TokenService
from .config import Settings, get_settings
from .core.broadcaster import Broadcaster, Subscription
from .core.correlator import CommandCorrelator
from .core.frame_cache import FrameCache
from .core.liveness import LivenessSupervisor
from .core.registry import ConnectionRegistry, DeviceConnection
from .core.session_gate import SessionGate
from .errors import DeviceOffline, SessionNotFound, TransportFailure
from .otp import OtpService
from .state import DeviceTransport, MediaFrame, Sink

logger = logging.getLogger(__name__)

CAPTURE_COMMAND = "capture"
START_COMMAND = "start"
CORRELATION_FEATURE = "correlation"


class RelayManager:
    """Single entry point the front door talks to."""

    _HOUSEKEEPING_SECONDS: float = 60.0

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        directory: Optional[DirectoryStore] = None,
        notifier: Optional[NotificationSender] = None,
        tokens: Optional[TokenService] = None,
    ) -> None:
        self.settings = settings or get_settings()
        timings = self.settings.timings

        self.directory: DirectoryStore = directory or InMemoryDirectory()
        self.notifier: NotificationSender = notifier or build_notifier(self.settings)
        self.tokens = tokens or TokenService(self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)

        self.registry = ConnectionRegistry(close_timeout=timings.close_timeout)
        self.frames = FrameCache()
        self.correlator = CommandCorrelator(
            self.registry,
            default_timeout=timings.command_timeout,
            retention=timings.result_retention,
        )
        self.broadcaster = Broadcaster(
            self.frames,
            write_timeout=timings.subscriber_write_timeout,
            capture_hook=self._capture_now,
        )
        self.liveness = LivenessSupervisor(
            self.registry,
            self._evict,
            interval=timings.heartbeat_interval,
        )
        self.gate = SessionGate(self.tokens, self.directory, force_reauth=self.settings.auth.force_reauth)
        self.otp = OtpService(
            self.directory,
            self.notifier,
            self.tokens,
            self.settings.auth,
            on_grant=self.push_auth_grant,
        )

        self._sequences: Dict[str, Iterator[int]] = {}
        self._known_devices: set[str] = set()
        self._background_tasks: list[asyncio.Task[Any]] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        logger.info("Starting relay manager")
        await self.liveness.start()
        self._background_tasks.append(asyncio.create_task(self._watch_devices(), name="relay-device-watch"))
        self._background_tasks.append(asyncio.create_task(self._housekeeping_loop(), name="relay-housekeeping"))
        logger.info("Relay manager started")

    async def stop(self) -> None:
        logger.info("Stopping relay manager")
        await self.liveness.stop()

        for task in self._background_tasks:
            task.cancel()
        for task in self._background_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping background task: %s", e)
        self._background_tasks.clear()

        for connection in self.registry.connections():
            await self._evict(connection, "relay shutting down")
        await self.broadcaster.close_all()

        try:
            await self.notifier.aclose()
        except Exception as e:
            logger.warning("Error closing notifier: %s", e)
        logger.info("Relay manager stopped")

    # ------------------------------------------------------------------
    # Device side
    # ------------------------------------------------------------------

    async def connect_device(
        self,
        identity: str,
        transport: DeviceTransport,
        *,
        features: Optional[list[str]] = None,
    ) -> DeviceConnection:
        """Register a camera after its ``hello``; the newest connection wins."""
        previous = self.registry.lookup(identity)
        supports_tokens = features is None or CORRELATION_FEATURE in features
        connection = await self.registry.register(identity, transport, supports_tokens=supports_tokens)
        if previous is not None and previous is not connection:
            self.correlator.fail_all(identity, connection_id=previous.connection_id, reason="connection replaced")
        if not supports_tokens:
            logger.info("Camera %s has no correlation support; captures resolve on next frame", identity)

        self._known_devices.add(identity)
        await self._touch(identity)
        await self.push_auth_grant(identity)

        if await self.directory.get(DirectoryKeys.pending_start(identity)):
            try:
                await self.send_command(identity, START_COMMAND)
                await self.directory.delete(DirectoryKeys.pending_start(identity))
                logger.info("Replayed pending start to %s", identity)
            except (DeviceOffline, TransportFailure) as e:
                logger.warning("Pending start for %s not delivered: %s", identity, e)
        return connection

    async def disconnect_device(self, connection: DeviceConnection, reason: str = "connection closed") -> None:
        """Tear down bookkeeping for a closed camera connection."""
        await self.registry.unregister(connection.identity, connection)
        self.correlator.fail_all(connection.identity, connection_id=connection.connection_id, reason=reason)
        try:
            await self._touch(connection.identity)
        except Exception as e:
            logger.warning("Failed to record last_seen for %s: %s", connection.identity, e)

    async def handle_device_text(self, connection: DeviceConnection, text: str) -> None:
        """Handle one JSON text message from a camera; bad input is logged and dropped."""
        try:
            message = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Invalid JSON from camera %s: %.200s", connection.identity, text)
            return
        if not isinstance(message, dict):
            logger.warning("Unexpected message from camera %s: %.200s", connection.identity, text)
            return

        connection.acknowledge()
        message_type = message.get("type")
        try:
            if message_type == "pong":
                return

            if message_type == "response":
                await self._handle_response(connection, message)
                return

            if message_type == "auth_grant":
                logger.info("Camera %s acknowledged auth_grant", connection.identity)
                return

            if message_type == "hello":
                return

            logger.debug("Ignoring %r message from camera %s", message_type, connection.identity)
        except Exception as e:
            logger.exception("Error handling camera message from %s: %s", connection.identity, e)

    async def push_media(self, identity: str, payload: bytes) -> MediaFrame:
        """Cache and fan out one binary media unit."""
        frame = MediaFrame(device_id=identity, payload=bytes(payload), sequence=next(self._sequence(identity)))

        connection = self.registry.lookup(identity)
        if connection is not None:
            connection.acknowledge()
            if not connection.supports_tokens:
                self.correlator.resolve_latest(identity, frame.payload)

        await self.broadcaster.publish(identity, frame)
        return frame

    # ------------------------------------------------------------------
    # Viewer side
    # ------------------------------------------------------------------

    async def subscribe_viewer(self, identity: str, sink: Sink) -> Subscription:
        return await self.broadcaster.subscribe(identity, sink)

    async def unsubscribe(self, subscription: Subscription) -> None:
        await self.broadcaster.unsubscribe(subscription)

    async def capture_once(self, identity: str, timeout: Optional[float] = None) -> bytes:
        """Ask the camera for one frame and wait for it."""
        if timeout is None:
            timeout = self.settings.timings.capture_timeout
        return await self.correlator.request(identity, CAPTURE_COMMAND, timeout)

    async def send_command(self, identity: str, name: str, **arguments: Any) -> None:
        """Fire-and-forget command to a camera."""
        connection = self.registry.lookup(identity)
        if connection is None:
            raise DeviceOffline(identity)
        try:
            await connection.transport.send_json({"type": "cmd", "cmd": name, **arguments})
        except Exception as e:
            raise TransportFailure("camera connection lost", log_message=f"send {name} to {identity}: {e}") from e
        logger.info("Forwarded command %s to camera %s", name, identity)

    async def request_start(self, identity: str) -> bool:
        """Start streaming now, or remember the request until the camera connects."""
        if identity in self.registry:
            try:
                await self.send_command(identity, START_COMMAND)
                return True
            except TransportFailure as e:
                logger.warning("Start for %s failed, deferring: %s", identity, e)
        await self.directory.set(DirectoryKeys.pending_start(identity), {"requestedAt": time.time()})
        logger.info("Camera %s offline; start request stored", identity)
        return False

    def list_online_devices(self) -> set[str]:
        return self.registry.identities()

    def list_known_devices(self) -> set[str]:
        return set(self._known_devices)

    async def push_auth_grant(self, identity: str) -> bool:
        """Send the stored, unexpired session to the camera if it is connected."""
        connection = self.registry.lookup(identity)
        if connection is None:
            return False
        session = await self.directory.get(DirectoryKeys.session(identity))
        if not isinstance(session, dict) or not session.get("token"):
            return False
        ttl = float(session.get("expiresAt", 0)) - time.time()
        if ttl <= 0:
            logger.info("Stored session for %s is expired; not pushing", identity)
            return False
        try:
            await connection.transport.send_json(
                {
                    "type": "auth_grant",
                    "deviceId": identity,
                    "email": session.get("email"),
                    "token": session["token"],
                    "ttl_ms": int(ttl * 1000),
                }
            )
        except Exception as e:
            logger.error("Failed sending auth_grant to camera %s: %s", identity, e)
            return False
        logger.info("Pushed auth_grant to camera %s", identity)
        return True

    async def push_session(self, identity: str) -> None:
        """On-demand ``push_auth_grant`` that reports why nothing was pushed."""
        session = await self.directory.get(DirectoryKeys.session(identity))
        if not isinstance(session, dict) or not session.get("token"):
            raise SessionNotFound(identity)
        if float(session.get("expiresAt", 0)) <= time.time():
            raise SessionNotFound(identity)
        if identity not in self.registry:
            raise DeviceOffline(identity)
        if not await self.push_auth_grant(identity):
            raise TransportFailure("camera connection lost", log_message=f"auth_grant to {identity} not delivered")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _handle_response(self, connection: DeviceConnection, message: Dict[str, Any]) -> None:
        token = message.get("id")
        if not token:
            logger.warning("Response without id from camera %s", connection.identity)
            return
        if message.get("error"):
            self.correlator.reject(str(token), str(message["error"]))
            return

        data = message.get("data") or ""
        try:
            payload = base64.b64decode(data, validate=True) if data else b""
        except (binascii.Error, ValueError):
            logger.warning("Undecodable response payload from camera %s", connection.identity)
            self.correlator.reject(str(token), "malformed payload")
            return

        if self.correlator.resolve(str(token), payload) and payload:
            await self.push_media(connection.identity, payload)

    async def _capture_now(self, identity: str) -> str:
        return await self.correlator.issue(identity, CAPTURE_COMMAND, self.settings.timings.capture_timeout)

    async def _evict(self, connection: DeviceConnection, reason: str) -> None:
        try:
            await asyncio.wait_for(connection.transport.close(), timeout=self.settings.timings.close_timeout)
        except Exception as e:
            logger.debug("Error closing evicted camera %s: %s", connection.identity, e)
        await self.disconnect_device(connection, reason=reason)

    async def _touch(self, identity: str) -> None:
        await self.directory.set(DirectoryKeys.last_seen(identity), time.time())

    def _sequence(self, identity: str) -> Iterator[int]:
        counter = self._sequences.get(identity)
        if counter is None:
            counter = self._sequences[identity] = itertools.count(1)
        return counter

    async def _watch_devices(self) -> None:
        try:
            async for device_id in self.directory.watch_children(DirectoryKeys.DEVICES):
                if device_id not in self._known_devices:
                    logger.info("Watching device: %s", device_id)
                self._known_devices.add(device_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Device watch crashed: %s", e)

    async def _housekeeping_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._HOUSEKEEPING_SECONDS)
                try:
                    await self.gate.prune_revocations()
                    dropped = self.frames.evict_idle(
                        self.settings.timings.frame_cache_idle,
                        keep=self.registry.identities() | self.broadcaster.devices_with_viewers(),
                    )
                    for identity in dropped:
                        self._sequences.pop(identity, None)
                    if dropped:
                        logger.info("Dropped cached frames of idle devices: %s", ", ".join(sorted(dropped)))
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.exception("Housekeeping error: %s", exc)
        except asyncio.CancelledError:
            raise


__all__ = ["CAPTURE_COMMAND", "CORRELATION_FEATURE", "RelayManager", "START_COMMAND"]
