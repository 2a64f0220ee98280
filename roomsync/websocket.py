import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from .broadcaster import ChangeBroadcaster
from .collaborators import ChatHistoryStore, DevIdentityVerifier, IdentityVerifier, RoomAuthorizer
from .config import Settings
from .errors import InvalidEvent, SyncError, TransportDisconnect
from .join import JoinCoordinator
from .models import RoomSnapshot, WebSocketMessage
from .presence import PresenceTracker
from .sandbox import CodeSandbox
from .state import RoomStateStore
from .throttle import ThrottleGate
from .transport import Connection, Transport

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Wires the sync components to live connections.

    Owns connection lifecycle (verify, register, dispatch, disconnect), the
    heartbeat reaper and the idle-room eviction schedule.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[RoomStateStore] = None,
        presence: Optional[PresenceTracker] = None,
        verifier: Optional[IdentityVerifier] = None,
        authorizer: Optional[RoomAuthorizer] = None,
        history: Optional[ChatHistoryStore] = None,
        sandbox: Optional[CodeSandbox] = None,
    ):
        self.settings = settings or Settings()
        self.store = store or RoomStateStore(self.settings.chat_log_limit)
        self.presence = presence or PresenceTracker()
        self.verifier = verifier or DevIdentityVerifier()
        self.coordinator = JoinCoordinator(
            self.store,
            self.presence,
            authorizer=authorizer,
            history=history,
            require_provisioned_rooms=self.settings.require_provisioned_rooms,
        )
        self.gate = ThrottleGate(self.settings.whiteboard_window)
        self.broadcaster = ChangeBroadcaster(
            self.store,
            self.presence,
            self.coordinator,
            gate=self.gate,
            history=history,
            sandbox=sandbox,
        )
        self.empty_rooms_scheduled: Dict[str, datetime] = {}
        self.last_cleanup_time = datetime.now(timezone.utc)
        self._disconnecting: Set[str] = set()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._pending_disconnects: Set[asyncio.Task] = set()
        logger.info("🔄 ConnectionManager initialized (throttle %dms, chat log %d, heartbeat %ss)",
                    self.settings.whiteboard_throttle_ms, self.settings.chat_log_limit,
                    self.settings.heartbeat_timeout)

    # Lifecycle

    def start(self):
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_scheduler())

    async def stop(self):
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        for connection in self.coordinator.connections():
            await self.disconnect(connection, close_code=1001, reason="Server shutting down")
        await self.broadcaster.close()

    # Connections

    async def connect(self, transport: Transport, token: Optional[str]) -> Connection:
        """Verify the token and register the connection. Raises PermissionDenied."""
        identity = await self.verifier.verify(token)
        connection = Connection(
            transport,
            identity,
            max_outbox=self.settings.outbox_max_size,
            on_broken=self._on_broken,
        )
        connection.start()
        self.coordinator.register(connection)
        connection.send("connected", {
            "connectionId": connection.connection_id,
            "identity": connection.identity,
            "displayName": connection.display_name,
        })
        logger.info("🔌 %s connected as %s", connection.identity, connection.connection_id)
        return connection

    async def join(self, connection: Connection, room_id: str) -> Optional[RoomSnapshot]:
        """Join and report failures to the connection. Returns None when the join failed."""
        try:
            return await self.coordinator.join(connection, room_id)
        except SyncError as e:
            self._reply_error(connection, e)
        except TransportDisconnect:
            logger.debug("%s went away while joining %s", connection.connection_id, room_id)
        return None

    async def dispatch(self, connection: Connection, raw: str):
        """Handle one inbound text frame"""
        connection.touch()
        try:
            message = self._decode(raw)
            await self._route(connection, message)
        except SyncError as e:
            logger.info("⚠️ Rejected %s from %s: %s", e.event, connection.connection_id, e.message)
            self._reply_error(connection, e)
        except TransportDisconnect:
            logger.debug("%s went away mid-dispatch", connection.connection_id)

    def _decode(self, raw: str) -> WebSocketMessage:
        try:
            return WebSocketMessage.model_validate(json.loads(raw))
        except ValueError as e:
            if isinstance(e, ValidationError):
                raise InvalidEvent("frame must be {type, data}") from e
            raise InvalidEvent("malformed JSON frame") from e

    async def _route(self, connection: Connection, message: WebSocketMessage):
        if message.type == "heartbeat":
            connection.send("heartbeat_response", {})
        elif message.type == "join_room":
            await self.coordinator.join(connection, self._room_id(message))
        elif message.type == "leave_room":
            self.coordinator.leave(connection, self._room_id(message))
        else:
            self.broadcaster.handle(connection, message.type, message.data)

    @staticmethod
    def _room_id(message: WebSocketMessage) -> str:
        room_id = message.data.get("roomId") or message.data.get("room_id")
        if not isinstance(room_id, str) or not room_id:
            raise InvalidEvent("roomId is required", event=message.type)
        return room_id

    def _reply_error(self, connection: Connection, error: SyncError):
        try:
            connection.send("error", error.to_frame_data())
        except TransportDisconnect:
            logger.debug("Could not report %s to %s, connection closed", error.code, connection.connection_id)

    def _on_broken(self, connection: Connection):
        task = asyncio.ensure_future(self.disconnect(connection))
        self._pending_disconnects.add(task)
        task.add_done_callback(self._pending_disconnects.discard)

    async def disconnect(self, connection: Connection, close_code: Optional[int] = None, reason: Optional[str] = None):
        # Prevent recursive disconnect calls
        if connection.connection_id in self._disconnecting:
            return
        self._disconnecting.add(connection.connection_id)
        try:
            rooms = self.coordinator.disconnect(connection)
            if close_code is not None:
                await connection.close(code=close_code, reason=reason)
            else:
                await connection.shutdown()
            if rooms:
                logger.info("👋 %s disconnected from %s", connection.connection_id, rooms)
        finally:
            self._disconnecting.discard(connection.connection_id)

    # Cleanup

    async def _cleanup_scheduler(self):
        """Reap stale connections and evict idle rooms every cleanup interval"""
        while True:
            await asyncio.sleep(self.settings.cleanup_interval)
            try:
                await self.trigger_cleanup()
            except Exception:
                logger.exception("Error in cleanup scheduler")

    async def trigger_cleanup(self) -> Dict[str, Any]:
        self.last_cleanup_time = datetime.now(timezone.utc)
        stale = await self.cleanup_stale_connections()
        evicted = self.cleanup_idle_rooms(self.last_cleanup_time)
        return {"staleConnections": stale, "evictedRooms": evicted}

    async def cleanup_stale_connections(self) -> int:
        """Force-detach connections that have been silent past the heartbeat timeout"""
        stale = [
            connection for connection in self.coordinator.connections()
            if connection.idle_for() > self.settings.heartbeat_timeout
        ]
        if stale:
            logger.info("🧹 Found %d stale connections (silent for %ss+)", len(stale), self.settings.heartbeat_timeout)
        for connection in stale:
            await self.disconnect(connection, close_code=4002, reason="Connection timeout - no heartbeat received")
        return len(stale)

    def cleanup_idle_rooms(self, now: Optional[datetime] = None) -> List[str]:
        """Evict rooms whose presence has been empty for longer than the cleanup delay"""
        now = now or datetime.now(timezone.utc)
        delay = timedelta(seconds=self.settings.room_cleanup_delay)
        live_rooms = set(self.store.room_ids())
        evicted = []

        for room_id in list(self.empty_rooms_scheduled):
            if room_id not in live_rooms or self.presence.count(room_id) > 0:
                del self.empty_rooms_scheduled[room_id]

        for room_id in live_rooms:
            if self.presence.count(room_id) > 0:
                continue
            scheduled_at = self.empty_rooms_scheduled.setdefault(room_id, now)
            if now - scheduled_at >= delay:
                self.store.evict(room_id)
                del self.empty_rooms_scheduled[room_id]
                evicted.append(room_id)
        if evicted:
            logger.info("🧹 Evicted %d idle rooms: %s", len(evicted), evicted)
        return evicted

    def cleanup_status(self) -> Dict[str, Any]:
        delay = timedelta(seconds=self.settings.room_cleanup_delay)
        now = datetime.now(timezone.utc)
        scheduled = []
        for room_id, scheduled_at in self.empty_rooms_scheduled.items():
            remaining = scheduled_at + delay - now
            scheduled.append({
                "room_id": room_id,
                "scheduled_at": scheduled_at.isoformat(),
                "cleanup_at": (scheduled_at + delay).isoformat(),
                "time_until_cleanup": max(0, int(remaining.total_seconds())),
            })
        return {
            "scheduled_cleanups": scheduled,
            "total_scheduled": len(scheduled),
            "last_cleanup_time": self.last_cleanup_time.isoformat(),
            "next_cleanup_check": (
                self.last_cleanup_time + timedelta(seconds=self.settings.cleanup_interval)
            ).isoformat(),
        }

    # Introspection

    def get_room_info(self, room_id: str) -> Dict[str, Any]:
        participants = self.presence.members(room_id)
        stats = self.store.stats().get(room_id, {})
        return {
            "room_id": room_id,
            "users": [p.to_wire() for p in participants],
            "count": len(participants),
            "chatMessages": stats.get("chatMessages", 0),
            "lastActivity": stats.get("lastActivity"),
        }

    def get_all_rooms(self) -> List[Dict[str, Any]]:
        return [self.get_room_info(room_id) for room_id in self.store.room_ids()]

    def get_connection_count(self) -> int:
        return len(self.coordinator.connections())
