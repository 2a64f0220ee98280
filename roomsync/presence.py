import logging
from typing import Dict, List, Optional

from .models import Participant

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Per-room set of attached connections.

    Entries are keyed by connection id, so one identity with two live
    connections shows up twice. Operations on unknown rooms or connections are
    no-ops: disconnects can race with room cleanup.
    """

    def __init__(self):
        self._rooms: Dict[str, Dict[str, Participant]] = {}

    def attach(self, room_id: str, participant: Participant) -> List[Participant]:
        room = self._rooms.setdefault(room_id, {})
        room[participant.connection_id] = participant.model_copy()
        return self.members(room_id)

    def detach(self, room_id: str, connection_id: str) -> List[Participant]:
        room = self._rooms.get(room_id)
        if room is None:
            return []
        removed = room.pop(connection_id, None)
        if not room:
            del self._rooms[room_id]
        if removed is not None and not self.is_online(room_id, removed.identity):
            logger.info("👋 %s is offline in room %s", removed.identity, room_id)
        return self.members(room_id)

    def set_typing(self, room_id: str, connection_id: str, is_typing: bool) -> Optional[Participant]:
        room = self._rooms.get(room_id)
        if room is None or connection_id not in room:
            return None
        updated = room[connection_id].model_copy(update={"is_typing": bool(is_typing)})
        room[connection_id] = updated
        return updated.model_copy()

    def members(self, room_id: str) -> List[Participant]:
        return [p.model_copy() for p in self._rooms.get(room_id, {}).values()]

    def get(self, room_id: str, connection_id: str) -> Optional[Participant]:
        participant = self._rooms.get(room_id, {}).get(connection_id)
        return participant.model_copy() if participant else None

    def is_online(self, room_id: str, identity: str) -> bool:
        return any(p.identity == identity for p in self._rooms.get(room_id, {}).values())

    def connection_ids(self, room_id: str) -> List[str]:
        return list(self._rooms.get(room_id, {}).keys())

    def count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, {}))

    def rooms(self) -> List[str]:
        return list(self._rooms.keys())
