import enum
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .collaborators import AllowAllAuthorizer, ChatHistoryStore, NullChatHistory, RoomAuthorizer
from .errors import InvalidEvent, NotInRoom, PermissionDenied, RoomNotFound, TransportDisconnect
from .models import Participant, RoomSnapshot
from .presence import PresenceTracker
from .state import RoomStateStore
from .transport import Connection

if TYPE_CHECKING:
    from .broadcaster import ChangeBroadcaster

logger = logging.getLogger(__name__)


class JoinState(str, enum.Enum):
    UNJOINED = "unjoined"
    JOINING = "joining"
    JOINED = "joined"
    LEFT = "left"


def presence_payload(room_id: str, participants: List[Participant]) -> Dict[str, Any]:
    return {
        "roomId": room_id,
        "participants": [p.to_wire() for p in participants],
        "count": len(participants),
    }


class JoinCoordinator:
    """Moves a connection in and out of rooms.

    A join authorizes, registers presence and hydrates the joiner with a
    snapshot sent to it alone; peers only learn about the newcomer from the
    presence update. Leaving (or disconnecting) detaches presence and tells
    the remaining members.
    """

    def __init__(
        self,
        store: RoomStateStore,
        presence: PresenceTracker,
        authorizer: Optional[RoomAuthorizer] = None,
        history: Optional[ChatHistoryStore] = None,
        require_provisioned_rooms: bool = False,
    ):
        self.store = store
        self.presence = presence
        self.authorizer = authorizer or AllowAllAuthorizer()
        self.history = history or NullChatHistory()
        self.require_provisioned_rooms = require_provisioned_rooms
        self.broadcaster: Optional["ChangeBroadcaster"] = None
        self._connections: Dict[str, Connection] = {}
        self._states: Dict[str, Dict[str, JoinState]] = {}

    def bind(self, broadcaster: "ChangeBroadcaster"):
        self.broadcaster = broadcaster

    # Connection registry

    def register(self, connection: Connection):
        self._connections[connection.connection_id] = connection
        self._states.setdefault(connection.connection_id, {})

    def connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    # Join state

    def state_of(self, connection_id: str, room_id: str) -> JoinState:
        return self._states.get(connection_id, {}).get(room_id, JoinState.UNJOINED)

    def is_joined(self, connection_id: str, room_id: str) -> bool:
        return self.state_of(connection_id, room_id) is JoinState.JOINED

    def rooms_of(self, connection_id: str) -> List[str]:
        return [
            room_id for room_id, state in self._states.get(connection_id, {}).items()
            if state is JoinState.JOINED
        ]

    def _set_state(self, connection_id: str, room_id: str, state: JoinState):
        self._states.setdefault(connection_id, {})[room_id] = state

    # Transitions

    async def join(self, connection: Connection, room_id: str) -> RoomSnapshot:
        conn_id = connection.connection_id
        if connection.closed:
            raise TransportDisconnect(conn_id)
        if conn_id not in self._connections:
            self.register(connection)

        previous = self.state_of(conn_id, room_id)
        if previous is JoinState.JOINED:
            snapshot = self.store.snapshot(room_id, self.presence.members(room_id))
            self._hydrate(connection, snapshot)
            return snapshot
        if previous is JoinState.JOINING:
            raise InvalidEvent(f"join of room {room_id} already in progress", event="join_room")

        self._set_state(conn_id, room_id, JoinState.JOINING)
        try:
            await self._admit(connection, room_id)
        except BaseException:
            if conn_id in self._connections:
                self._set_state(conn_id, room_id, previous)
            raise

        # No awaits from here on: presence, snapshot and hydration are one step
        self.presence.attach(room_id, connection.participant())
        members = self.presence.members(room_id)
        snapshot = self.store.snapshot(room_id, members)
        try:
            self._hydrate(connection, snapshot)
        except TransportDisconnect:
            self.presence.detach(room_id, conn_id)
            self._set_state(conn_id, room_id, JoinState.UNJOINED)
            raise
        self._set_state(conn_id, room_id, JoinState.JOINED)
        logger.info("✅ %s (%s) joined room %s, %d connected",
                    connection.identity, conn_id, room_id, len(members))

        if self.broadcaster is not None:
            self.broadcaster.fan_out(room_id, "presence_update", presence_payload(room_id, members),
                                     exclude=conn_id)
        return snapshot

    async def _admit(self, connection: Connection, room_id: str):
        if self.require_provisioned_rooms and not self.store.is_provisioned(room_id):
            raise RoomNotFound(f"room {room_id} does not exist", event="join_room")

        try:
            allowed = await self.authorizer.authorize(connection.identity, room_id)
        except Exception:
            logger.warning("⚠️ Authorizer failed for %s in room %s, denying the join",
                           connection.identity, room_id, exc_info=True)
            raise PermissionDenied(f"could not authorize join of room {room_id}", event="join_room")
        if not allowed:
            logger.info("⛔ %s is not allowed in room %s", connection.identity, room_id)
            raise PermissionDenied(f"not allowed to join room {room_id}", event="join_room")

        if self.store.needs_history(room_id):
            await self._load_history(room_id)

        if connection.closed or connection.connection_id not in self._connections:
            raise TransportDisconnect(connection.connection_id)

    async def _load_history(self, room_id: str):
        try:
            messages = await self.history.load_history(room_id)
        except Exception:
            logger.warning("⚠️ Chat history unavailable for room %s, starting with an empty backlog",
                           room_id, exc_info=True)
            messages = []
        seeded = self.store.seed_chat_history(room_id, messages)
        if seeded:
            logger.info("📜 Loaded %d chat messages for room %s", seeded, room_id)

    def _hydrate(self, connection: Connection, snapshot: RoomSnapshot):
        wire = snapshot.to_wire()
        connection.send("room_joined", wire)
        connection.send("chat_history", {"roomId": snapshot.room_id, "messages": wire["chatLog"]})

    def leave(self, connection: Connection, room_id: str) -> List[Participant]:
        if not self.is_joined(connection.connection_id, room_id):
            raise NotInRoom(f"not joined to room {room_id}", event="leave_room")
        remaining = self._detach(connection.connection_id, room_id)
        try:
            connection.send("room_left", {"roomId": room_id})
        except TransportDisconnect:
            logger.debug("%s closed before room_left was sent", connection.connection_id)
        return remaining

    def _detach(self, connection_id: str, room_id: str) -> List[Participant]:
        if self.broadcaster is not None:
            self.broadcaster.flush_pending(connection_id, room_id)
        self._set_state(connection_id, room_id, JoinState.LEFT)
        remaining = self.presence.detach(room_id, connection_id)
        logger.info("🚪 %s left room %s, %d connected", connection_id, room_id, len(remaining))
        if self.broadcaster is not None:
            self.broadcaster.fan_out(room_id, "presence_update", presence_payload(room_id, remaining),
                                     exclude=connection_id)
        # Left is terminal, so the record is dropped and the pair reads Unjoined
        self._states.get(connection_id, {}).pop(room_id, None)
        return remaining

    def disconnect(self, connection: Connection) -> List[str]:
        """Leave every room of a connection and forget it. Safe to call twice."""
        conn_id = connection.connection_id
        rooms = self.rooms_of(conn_id)
        for room_id in rooms:
            self._detach(conn_id, room_id)
        if self.broadcaster is not None:
            self.broadcaster.discard_pending(conn_id)
        self._states.pop(conn_id, None)
        self._connections.pop(conn_id, None)
        return rooms
