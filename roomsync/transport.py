"""Connections and their ordered outboxes.

Every connection owns one FIFO outbox drained by its own writer task. Fan-out
only ever enqueues, so a slow peer never delays the others and frames reach
each peer in the order the server produced them.
"""
import asyncio
import json
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Protocol

from .errors import TransportDisconnect
from .models import Participant, VerifiedIdentity, utcnow

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send_text(self, data: str) -> None:
        ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        ...


def encode_frame(event_type: str, data: Dict[str, Any]) -> str:
    return json.dumps({
        "type": event_type,
        "data": data,
        "timestamp": utcnow().isoformat(),
    })


class Connection:
    def __init__(
        self,
        transport: Transport,
        identity: VerifiedIdentity,
        connection_id: Optional[str] = None,
        max_outbox: int = 1000,
        on_broken: Optional[Callable[["Connection"], None]] = None,
    ):
        self.connection_id = connection_id or uuid.uuid4().hex[:12]
        self.identity = identity.identity
        self.display_name = identity.display_name
        self.transport = transport
        self.connected_at = utcnow()
        self.last_seen = time.monotonic()
        self.closed = False
        self._outbox: "asyncio.Queue[str]" = asyncio.Queue(maxsize=max_outbox)
        self._writer: Optional[asyncio.Task] = None
        self._on_broken = on_broken

    def __repr__(self):
        return f"<Connection {self.connection_id} identity={self.identity}>"

    def start(self):
        if self._writer is None:
            self._writer = asyncio.get_running_loop().create_task(self._write_loop())

    def participant(self) -> Participant:
        return Participant(
            identity=self.identity,
            display_name=self.display_name,
            connection_id=self.connection_id,
        )

    def touch(self):
        self.last_seen = time.monotonic()

    def idle_for(self) -> float:
        return time.monotonic() - self.last_seen

    def send(self, event_type: str, data: Dict[str, Any]):
        """Enqueue one frame. Raises TransportDisconnect when the peer is gone."""
        if self.closed:
            raise TransportDisconnect(self.connection_id)
        try:
            self._outbox.put_nowait(encode_frame(event_type, data))
        except asyncio.QueueFull:
            logger.warning("⚠️ Outbox full for %s, dropping the connection", self.connection_id)
            self._mark_broken()
            raise TransportDisconnect(self.connection_id)

    async def drain(self):
        """Wait until every enqueued frame has been handed to the transport"""
        if self._writer is not None and not self._writer.done():
            await self._outbox.join()

    async def _write_loop(self):
        while True:
            frame = await self._outbox.get()
            try:
                await self.transport.send_text(frame)
            except Exception as e:
                logger.warning("❌ Send to %s failed: %s", self.connection_id, e)
                self._outbox.task_done()
                self._mark_broken()
                return
            self._outbox.task_done()

    def _discard_pending(self):
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()

    def _mark_broken(self):
        if self.closed:
            return
        self.closed = True
        self._discard_pending()
        if self._on_broken is not None:
            self._on_broken(self)

    async def shutdown(self):
        """Stop the writer without touching the transport (peer already gone)"""
        self.closed = True
        self._discard_pending()
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass

    async def close(self, code: int = 1000, reason: Optional[str] = None, flush_timeout: float = 1.0):
        """Flush what is queued, then close the transport"""
        if not self.closed and self._writer is not None and not self._writer.done():
            self.closed = True
            try:
                await asyncio.wait_for(self._outbox.join(), flush_timeout)
            except asyncio.TimeoutError:
                logger.debug("Outbox of %s not flushed before close", self.connection_id)
        await self.shutdown()
        try:
            await self.transport.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("Closing transport of %s: %s", self.connection_id, e)


class MemoryTransport:
    """In-process transport that records every frame it is asked to send"""

    def __init__(self, fail: bool = False):
        self.frames: List[Dict[str, Any]] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.fail = fail

    async def send_text(self, data: str) -> None:
        if self.fail or self.closed:
            raise ConnectionError("transport is closed")
        self.frames.append(json.loads(data))

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason

    def types(self) -> List[str]:
        return [frame["type"] for frame in self.frames]

    def events(self, event_type: str) -> List[Dict[str, Any]]:
        return [frame["data"] for frame in self.frames if frame["type"] == event_type]

    def last(self, event_type: str) -> Optional[Dict[str, Any]]:
        found = self.events(event_type)
        return found[-1] if found else None

    def clear(self):
        self.frames.clear()
