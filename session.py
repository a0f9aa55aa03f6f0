"""
Websocket session: one live client socket driven by a reader task and a
writer task that share a bounded outbound buffer.

The reader turns inbound frames into MarkRead / Ping / Unknown messages.
The writer is the only code that writes to the socket: it flushes queued
payloads (coalesced with a newline) and sends the close frame once the hub
closes the buffer.

Liveness is checked with protocol-level ping/pong by the ASGI server (see
server_options in main.py): a peer that does not answer a ping within
PONG_TIMEOUT is disconnected, which the reader sees as websocket.disconnect.
Browsers answer those pings on their own, so an idle client that never
sends an application frame stays connected.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, List, Optional, Protocol, Union

from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketDisconnect

from database import Clock

logger = logging.getLogger(__name__)

BUFFER_CAPACITY = 256
MAX_FRAME_BYTES = 512
WRITE_TIMEOUT = 10.0
# protocol pings every 54 s; a missing pong after 6 more drops the peer (60 s read deadline)
PING_INTERVAL = 54.0
PONG_TIMEOUT = 6.0

CLOSE_NORMAL = 1000
CLOSE_TOO_BIG = 1009


class OutboundBuffer:
    """Bounded FIFO between producers (any thread) and the session writer.

    try_put never blocks: it returns False when the buffer is full or closed.
    get() is awaited by the writer on the session's event loop and returns
    None once the buffer is closed and drained.
    """

    def __init__(self, capacity: int = BUFFER_CAPACITY) -> None:
        self.capacity = capacity
        self._items: Deque[str] = deque()
        self._lock = threading.Lock()
        self._closed = False
        self._ready = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def try_put(self, payload: str) -> bool:
        with self._lock:
            if self._closed or len(self._items) >= self.capacity:
                return False
            self._items.append(payload)
            self._wake()
        return True

    def drain_nowait(self) -> List[str]:
        """Pop everything currently queued."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
            return items

    def close(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("outbound buffer already closed")
            self._closed = True
            self._wake()

    async def get(self) -> Optional[str]:
        while True:
            with self._lock:
                self._loop = asyncio.get_running_loop()
                if self._items:
                    return self._items.popleft()
                if self._closed:
                    return None
                self._ready.clear()
            await self._ready.wait()

    def _wake(self) -> None:
        # caller holds self._lock
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._ready.set)


# ----------------------------
# Inbound messages
# ----------------------------
@dataclass(frozen=True)
class MarkRead:
    notification_id: int


@dataclass(frozen=True)
class Ping:
    pass


@dataclass(frozen=True)
class Unknown:
    raw: Any = None


InboundMessage = Union[MarkRead, Ping, Unknown]


def parse_inbound(data: Union[str, bytes]) -> InboundMessage:
    try:
        msg = json.loads(data)
    except ValueError:
        return Unknown(data)
    if not isinstance(msg, dict):
        return Unknown(msg)
    msg_type = msg.get("type")
    if msg_type == "ping":
        return Ping()
    if msg_type == "mark_read":
        nid = msg.get("notification_id")
        # bool is an int subclass; JSON true is not an id
        if isinstance(nid, bool):
            return Unknown(msg)
        if isinstance(nid, float) and nid.is_integer():
            nid = int(nid)
        if isinstance(nid, int):
            return MarkRead(nid)
    return Unknown(msg)


class Socket(Protocol):
    """The subset of starlette's WebSocket a session needs."""

    async def receive(self) -> dict: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


WRITE_ERRORS = (WebSocketDisconnect, RuntimeError, OSError, asyncio.TimeoutError)


class Session:
    """A registered websocket client.

    The session never holds the hub. It gets two callables: on_close, called
    exactly once when either task ends, and mark_read, run in the threadpool
    for each mark_read frame.
    """

    def __init__(
        self,
        session_id: int,
        user_id: int,
        socket: Socket,
        on_close: Callable[["Session"], Any],
        mark_read: Callable[[int], Any],
        clock: Optional[Clock] = None,
        capacity: int = BUFFER_CAPACITY,
        max_frame_bytes: int = MAX_FRAME_BYTES,
        write_timeout: float = WRITE_TIMEOUT,
    ) -> None:
        self.session_id = session_id
        self.user_id = user_id
        self.socket = socket
        self.outbound = OutboundBuffer(capacity)
        self.clock = clock or Clock()
        self.max_frame_bytes = max_frame_bytes
        self.write_timeout = write_timeout
        self.close_code = CLOSE_NORMAL
        self.dropped = 0
        self._on_close = on_close
        self._mark_read = mark_read
        self._closed = False

    def __repr__(self) -> str:
        return f"<Session {self.session_id} user={self.user_id}>"

    async def run(self) -> None:
        """Drive reader and writer until either one ends."""
        reader = asyncio.create_task(self._read_loop(), name=f"session-{self.session_id}-reader")
        writer = asyncio.create_task(self._write_loop(), name=f"session-{self.session_id}-writer")
        try:
            await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self._close_once()
            if not reader.done():
                reader.cancel()
            # the writer drains and sends the close frame after the buffer closes
            try:
                await asyncio.wait_for(writer, self.write_timeout)
            except asyncio.TimeoutError:
                logger.warning("session %d writer did not exit in time", self.session_id)
            await asyncio.gather(reader, return_exceptions=True)

    def _close_once(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._on_close(self)

    # -------------------- reader --------------------

    async def _read_loop(self) -> None:
        while True:
            try:
                message = await self.socket.receive()
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.info("session %d read error: %s", self.session_id, e)
                return

            if message.get("type") == "websocket.disconnect":
                return
            data = message.get("text")
            if data is None:
                data = message.get("bytes")
            if data is None:
                continue
            size = len(data.encode("utf-8")) if isinstance(data, str) else len(data)
            if size > self.max_frame_bytes:
                logger.warning("session %d frame of %d bytes exceeds limit", self.session_id, size)
                self.close_code = CLOSE_TOO_BIG
                return
            await self._handle(parse_inbound(data))

    async def _handle(self, msg: InboundMessage) -> None:
        if isinstance(msg, MarkRead):
            try:
                await run_in_threadpool(self._mark_read, msg.notification_id)
            except Exception:
                logger.exception("session %d failed to mark notification %d as read",
                                 self.session_id, msg.notification_id)
        elif isinstance(msg, Ping):
            pong = json.dumps({"type": "pong", "timestamp": self.clock.unix()})
            if not self.outbound.try_put(pong):
                self.dropped += 1
                logger.warning("session %d buffer full, skipping pong", self.session_id)

    # -------------------- writer --------------------

    async def _write_loop(self) -> None:
        try:
            while True:
                payload = await self.outbound.get()
                if payload is None:
                    await asyncio.wait_for(self.socket.close(code=self.close_code), self.write_timeout)
                    return
                batch = [payload] + self.outbound.drain_nowait()
                await self._send("\n".join(batch))
        except WRITE_ERRORS as e:
            logger.info("session %d write error: %r", self.session_id, e)

    async def _send(self, frame: str) -> None:
        await asyncio.wait_for(self.socket.send_text(frame), self.write_timeout)
