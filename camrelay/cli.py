#!/usr/bin/env python3
# Simulated camera: streams JPEG files from a directory to the relay and answers captures.

from __future__ import annotations
import argparse
import asyncio
import itertools
import logging
import sys
from pathlib import Path
from typing import Iterator, Optional

import websockets

from .device_client import DeviceClient

log = logging.getLogger("camrelay.device")


def load_frames(directory: Path) -> list[bytes]:
    files = sorted(p for p in directory.iterdir() if p.suffix.lower() in (".jpg", ".jpeg"))
    return [p.read_bytes() for p in files]


class FrameCycle:
    """Endless round-robin over pre-loaded frames."""

    def __init__(self, frames: list[bytes]) -> None:
        self._frames: Iterator[bytes] = itertools.cycle(frames)
        self._empty = not frames

    async def next_frame(self) -> Optional[bytes]:
        if self._empty:
            return None
        return next(self._frames)


async def run(args: argparse.Namespace, frames: list[bytes]) -> int:
    cycle = FrameCycle(frames)
    backoff = 1.0
    while True:
        client = DeviceClient(args.url, args.device_id, cycle.next_frame, correlation=not args.no_correlation)
        try:
            await client.connect()
            backoff = 1.0
            if args.fps > 0:
                streamer = asyncio.create_task(client.stream(args.fps), name="device-stream")
            else:
                streamer = None
            await client.wait_closed()
            if streamer:
                streamer.cancel()
        except (OSError, websockets.WebSocketException) as e:
            log.warning("Relay unreachable: %s", e)
        finally:
            await client.disconnect()
        if args.once:
            return 0
        log.info("Reconnecting in %.0fs", backoff)
        await asyncio.sleep(backoff)
        backoff = min(backoff * 2, 30.0)


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Simulated relay camera")
    ap.add_argument("--url", default="ws://127.0.0.1:10000/ws", help="Relay websocket URL")
    ap.add_argument("--device-id", required=True, help="Self-asserted device identity")
    ap.add_argument("--frames", type=Path, required=True, help="Directory of JPEG files to send")
    ap.add_argument("--fps", type=float, default=2.0, help="Streaming rate; 0 answers captures only")
    ap.add_argument("--no-correlation", action="store_true", help="Behave like a device without tokens")
    ap.add_argument("--once", action="store_true", help="Exit instead of reconnecting")
    ap.add_argument("--log", default="INFO")
    args = ap.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log.upper(), logging.INFO),
                        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")

    if not args.frames.is_dir():
        log.error("Frame directory %s does not exist", args.frames)
        return 2
    frames = load_frames(args.frames)
    if not frames:
        log.error("No JPEG files in %s", args.frames)
        return 2
    log.info("Loaded %d frame(s) for %s", len(frames), args.device_id)

    try:
        return asyncio.run(run(args, frames))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
