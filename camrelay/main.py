"""FastAPI entry-point for the camera relay."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional

import psutil
from fastapi import FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .errors import (
    AccessDenied,
    CommandTimeout,
    DeviceOffline,
    Forbidden,
    OtpError,
    RelayError,
    SessionNotFound,
    TransportFailure,
    UnknownCommand,
)
from .logging_config import configure_logging
from .relay_manager import RelayManager
from .state import DeviceRole
from .transports import QueueSink, WebSocketSink, WebSocketTransport

logger = logging.getLogger(__name__)

settings: Settings = get_settings()
configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
app = FastAPI(title="camrelay", version="0.1.0")
manager = RelayManager(settings=settings)

HELLO_TIMEOUT_SECONDS = 10.0
STREAM_BOUNDARY = "frame"

_ERROR_STATUS: list[tuple[type[RelayError], int]] = [
    (DeviceOffline, status.HTTP_404_NOT_FOUND),
    (UnknownCommand, status.HTTP_404_NOT_FOUND),
    (SessionNotFound, status.HTTP_404_NOT_FOUND),
    (CommandTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
    (TransportFailure, status.HTTP_502_BAD_GATEWAY),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (AccessDenied, status.HTTP_401_UNAUTHORIZED),
    (OtpError, status.HTTP_400_BAD_REQUEST),
]


def _status_for(exc: RelayError) -> int:
    for kind, code in _ERROR_STATUS:
        if isinstance(exc, kind):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(RelayError)
async def relay_exception_handler(request: Request, exc: RelayError) -> JSONResponse:
    code = _status_for(exc)
    logger.info("%s %s -> %d (%s)", request.method, request.url.path, code, exc)
    body: dict[str, Any] = {"ok": False, "error": exc.user_message}
    reason = getattr(exc, "reason", None)
    if reason:
        body["reason"] = reason
    return JSONResponse(body, status_code=code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors gracefully."""
    logger.warning(f"Validation error in {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"ok": False, "error": "invalid request", "detail": str(exc)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    """Catch-all exception handler to prevent application crashes."""
    logger.exception(f"Unhandled exception in {request.url.path}: {exc}")
    return PlainTextResponse(
        f"Internal server error: {str(exc)}",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def on_startup() -> None:
    await manager.start()
    logger.info("Relay listening on %s:%d", settings.relay_host, settings.relay_port)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    try:
        await manager.stop()
        logger.info("Application shutdown complete")
    except Exception as e:
        logger.exception(f"Error during shutdown: {e}")


def _credential(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.query_params.get("token") or request.cookies.get(manager.settings.auth.cookie_name)


# ----------------------------------------------------------------------
# Request models
# ----------------------------------------------------------------------

class RegisterDeviceRequest(BaseModel):
    deviceId: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    ssid: Optional[str] = None


class OtpRequest(BaseModel):
    deviceId: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)


class OtpVerifyRequest(OtpRequest):
    otp: str = Field(..., min_length=1)


class CommandRequest(BaseModel):
    deviceId: str = Field(..., min_length=1)
    cmd: str = Field(..., min_length=1)


class DeviceRequest(BaseModel):
    deviceId: str = Field(..., min_length=1)


# ----------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------

@app.get("/healthz")
async def healthcheck() -> JSONResponse:
    return JSONResponse({"ok": True, "online": len(manager.list_online_devices())})


@app.get("/debug/performance")
async def debug_performance() -> JSONResponse:
    """Get real-time CPU and memory usage."""
    try:
        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()

        return JSONResponse({
            "cpu_percent": round(cpu_percent, 1),
            "memory_percent": round(memory.percent, 1),
            "memory_used_mb": round(memory.used / (1024 * 1024), 1),
            "memory_total_mb": round(memory.total / (1024 * 1024), 1),
            "cameras": len(manager.registry),
            "pending_commands": manager.correlator.pending_count(),
        })
    except Exception as e:
        logger.error(f"Performance monitoring error: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)


@app.post("/register_device")
async def register_device(payload: RegisterDeviceRequest) -> JSONResponse:
    await manager.otp.register_device(payload.deviceId, payload.email, payload.ssid)
    return JSONResponse({"ok": True})


@app.post("/request_otp")
async def request_otp(payload: OtpRequest) -> JSONResponse:
    await manager.otp.request_otp(payload.deviceId, payload.email)
    return JSONResponse({"ok": True})


@app.post("/verify_otp")
async def verify_otp(payload: OtpVerifyRequest) -> JSONResponse:
    session = await manager.otp.verify_otp(payload.deviceId, payload.email, payload.otp)
    response = JSONResponse({"ok": True, "token": session["token"], "expiresAt": session["expiresAt"]})
    response.set_cookie(
        manager.settings.auth.cookie_name,
        session["token"],
        max_age=manager.settings.auth.session_ttl_seconds,
        httponly=True,
        samesite="strict",
    )
    return response


@app.post("/revoke")
async def revoke(request: Request) -> JSONResponse:
    credential = _credential(request)
    session = await manager.gate.validate(credential)
    await manager.gate.revoke(credential or "")
    response = JSONResponse({"ok": True, "revoked": session.token_id})
    response.delete_cookie(manager.settings.auth.cookie_name)
    return response


@app.post("/push_session")
async def push_session(payload: DeviceRequest) -> JSONResponse:
    """Re-send the stored session to a connected camera."""
    await manager.push_session(payload.deviceId)
    return JSONResponse({"ok": True})


@app.get("/devices")
async def list_devices() -> JSONResponse:
    return JSONResponse({"ok": True, "online": sorted(manager.list_online_devices())})


@app.post("/command")
async def command(payload: CommandRequest, request: Request) -> JSONResponse:
    await manager.gate.authorize(_credential(request), payload.deviceId)
    await manager.send_command(payload.deviceId, payload.cmd)
    return JSONResponse({"ok": True})


@app.post("/start")
async def start(payload: DeviceRequest, request: Request) -> JSONResponse:
    """Ask a camera to start streaming; challenges with OTP unless already verified."""
    if await manager.gate.needs_challenge(payload.deviceId):
        credential = _credential(request)
        await manager.gate.authorize(credential, payload.deviceId)
        if manager.gate.force_reauth:
            # Each OTP-backed credential starts the camera once.
            await manager.gate.revoke(credential or "")
    started = await manager.request_start(payload.deviceId)
    return JSONResponse({"ok": True, "started": started, "pending": not started})


@app.get("/capture/{device_id}")
async def capture(device_id: str, request: Request, timeout_ms: Optional[int] = Query(None, gt=0)) -> Response:
    await manager.gate.authorize(_credential(request), device_id)
    timeout = timeout_ms / 1000.0 if timeout_ms is not None else None
    frame = await manager.capture_once(device_id, timeout)
    return Response(content=frame, media_type="image/jpeg", headers={"Cache-Control": "no-store"})


@app.get("/stream/{device_id}")
async def stream(device_id: str, request: Request) -> StreamingResponse:
    """MJPEG stream of one camera's frames."""
    await manager.gate.authorize(_credential(request), device_id)
    sink = QueueSink()
    subscription = await manager.subscribe_viewer(device_id, sink)
    idle_timeout = manager.settings.timings.heartbeat_interval * 2

    async def frame_iterator() -> AsyncIterator[bytes]:
        try:
            async for frame in sink.frames(idle_timeout=idle_timeout):
                header = (
                    f"--{STREAM_BOUNDARY}\r\n"
                    f"Content-Type: image/jpeg\r\n"
                    f"Content-Length: {len(frame)}\r\n\r\n"
                ).encode("ascii")
                yield header + frame + b"\r\n"
        except Exception as e:
            logger.error(f"Viewer stream error: {e}")
        finally:
            await manager.unsubscribe(subscription)

    media_type = f"multipart/x-mixed-replace; boundary={STREAM_BOUNDARY}"
    return StreamingResponse(frame_iterator(), media_type=media_type)


@app.websocket("/ws")
async def relay_socket(ws: WebSocket) -> None:
    await ws.accept()
    try:
        hello = await asyncio.wait_for(_receive_hello(ws), timeout=HELLO_TIMEOUT_SECONDS)
    except (asyncio.TimeoutError, WebSocketDisconnect):
        hello = None
    if hello is None:
        await _close_quietly(ws, code=1008)
        return

    device_id = str(hello["deviceId"])
    role = hello["role"]
    if role == DeviceRole.CAMERA.value:
        await _serve_camera(ws, device_id, hello)
    elif role == DeviceRole.VIEWER.value:
        await _serve_viewer(ws, device_id, hello)
    else:
        logger.warning("Unknown role %r from %s", role, device_id)
        await _close_quietly(ws, code=1008)


async def _receive_hello(ws: WebSocket) -> Optional[dict[str, Any]]:
    while True:
        message = await ws.receive()
        if message["type"] == "websocket.disconnect":
            return None
        text = message.get("text")
        if text is None:
            logger.debug("Ignoring binary message before hello")
            continue
        try:
            obj = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("WS: invalid JSON text message before hello")
            continue
        if isinstance(obj, dict) and obj.get("type") == "hello" and obj.get("deviceId") and obj.get("role"):
            return obj
        logger.debug("Ignoring %r before hello", obj)


async def _serve_camera(ws: WebSocket, device_id: str, hello: dict[str, Any]) -> None:
    transport = WebSocketTransport(ws)
    features = list(hello.get("features") or [])
    connection = await manager.connect_device(device_id, transport, features=features)
    logger.info("Camera connected (hello): %s", device_id)
    reason = "connection closed"
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            data = message.get("bytes")
            if data is not None:
                await manager.push_media(device_id, data)
                continue
            text = message.get("text")
            if text is not None:
                await manager.handle_device_text(connection, text)
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        reason = "relay shutting down"
        raise
    except Exception as e:
        reason = f"camera flow error: {e}"
        logger.exception("Error in camera websocket for %s: %s", device_id, e)
    finally:
        await manager.disconnect_device(connection, reason=reason)
        await transport.close()


async def _serve_viewer(ws: WebSocket, device_id: str, hello: dict[str, Any]) -> None:
    credential = hello.get("token") or ws.query_params.get("token") or ws.cookies.get(manager.settings.auth.cookie_name)
    try:
        await manager.gate.authorize(credential, device_id)
    except AccessDenied as e:
        logger.info("Viewer for %s rejected: %s", device_id, e.reason)
        await _close_quietly(ws, code=1008, reason=e.reason)
        return

    subscription = await manager.subscribe_viewer(device_id, WebSocketSink(ws))
    logger.info("Viewer connected for %s", device_id)
    try:
        while subscription.active:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            text = message.get("text")
            if text is None:
                continue
            try:
                obj = json.loads(text)
            except json.JSONDecodeError:
                logger.debug("Viewer sent invalid JSON")
                continue
            if isinstance(obj, dict) and obj.get("type") == "control" and obj.get("cmd"):
                try:
                    await manager.send_command(device_id, str(obj["cmd"]))
                except RelayError as e:
                    logger.info("Control for %s not forwarded: %s", device_id, e)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Unexpected error in viewer websocket: {e}")
    finally:
        await manager.unsubscribe(subscription)
        await _close_quietly(ws)


async def _close_quietly(ws: WebSocket, code: int = 1000, reason: Optional[str] = None) -> None:
    try:
        await ws.close(code=code, reason=reason)
    except Exception:
        pass
