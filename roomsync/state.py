"""Authoritative in-memory state for every active room.

The store is pure data: it knows nothing about connections or transports. All
writers go through the narrow mutation API below. Every caller runs on the
event loop and no method awaits, so each mutation and each snapshot happens
in one uninterrupted step.
"""
import copy
import logging
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

from .models import (
    ChatMessage,
    CodePatch,
    CodeState,
    Participant,
    RoomSnapshot,
    WhiteboardState,
    utcnow,
)

logger = logging.getLogger(__name__)


class RoomState:
    def __init__(self, room_id: str, chat_log_limit: int):
        self.room_id = room_id
        self.code = CodeState()
        self.chat_log: Deque[ChatMessage] = deque(maxlen=chat_log_limit)
        self.whiteboard = WhiteboardState()
        self.next_message_seq = 1
        self.history_loaded = False
        self.created_at: datetime = utcnow()
        self.last_activity: datetime = self.created_at

    def touch(self):
        self.last_activity = utcnow()


class RoomStateStore:
    def __init__(self, chat_log_limit: int = 200):
        if chat_log_limit < 1:
            raise ValueError("chat_log_limit must be positive")
        self.chat_log_limit = chat_log_limit
        self._rooms: Dict[str, RoomState] = {}
        self._provisioned: Set[str] = set()

    def get_or_create(self, room_id: str) -> RoomState:
        room = self._rooms.get(room_id)
        if room is None:
            room = RoomState(room_id, self.chat_log_limit)
            self._rooms[room_id] = room
            logger.info("🆕 Room %s created", room_id)
        return room

    def exists(self, room_id: str) -> bool:
        return room_id in self._rooms

    def apply_code_change(self, room_id: str, patch: CodePatch) -> CodeState:
        """Merge the provided fields into the room's code state. Last write wins per field."""
        room = self.get_or_create(room_id)
        changes = patch.changes()
        if changes:
            room.code = room.code.model_copy(update=changes)
            room.touch()
        return room.code.model_copy()

    def append_chat_message(self, room_id: str, message: ChatMessage) -> ChatMessage:
        """Append to the room's chat log, assigning the next room-scoped id if missing.

        The log keeps only the most recent ``chat_log_limit`` entries; older ones
        are the durable history store's concern.
        """
        room = self.get_or_create(room_id)
        if message.id is None:
            message = message.model_copy(update={"id": str(room.next_message_seq)})
            room.next_message_seq += 1
        room.chat_log.append(message)
        room.touch()
        return message

    def needs_history(self, room_id: str) -> bool:
        return not self.get_or_create(room_id).history_loaded

    def seed_chat_history(self, room_id: str, messages: Iterable[ChatMessage]) -> int:
        """Hydrate a fresh room's chat log from the durable backlog, once.

        Messages that reached the room while the backlog was loading are kept
        after it. Returns the number of seeded messages.
        """
        room = self.get_or_create(room_id)
        if room.history_loaded:
            return 0
        room.history_loaded = True
        backlog = list(messages)
        live = list(room.chat_log)
        room.chat_log.clear()
        room.chat_log.extend(backlog)
        room.chat_log.extend(live)
        for message in backlog:
            if message.id and message.id.isdigit():
                room.next_message_seq = max(room.next_message_seq, int(message.id) + 1)
        return len(backlog)

    def replace_whiteboard(self, room_id: str, elements: List[Any], app_state: Dict[str, Any]) -> WhiteboardState:
        """Replace the whole whiteboard snapshot. No per-element merge."""
        room = self.get_or_create(room_id)
        room.whiteboard = WhiteboardState(
            elements=copy.deepcopy(elements),
            app_state=copy.deepcopy(app_state),
        )
        room.touch()
        return room.whiteboard.model_copy(deep=True)

    def whiteboard(self, room_id: str) -> WhiteboardState:
        return self.get_or_create(room_id).whiteboard.model_copy(deep=True)

    def code(self, room_id: str) -> CodeState:
        return self.get_or_create(room_id).code.model_copy()

    def snapshot(self, room_id: str, presence: Optional[List[Participant]] = None) -> RoomSnapshot:
        """Consistent point-in-time copy used to hydrate joiners"""
        room = self.get_or_create(room_id)
        return RoomSnapshot(
            room_id=room_id,
            code=room.code.model_copy(),
            chat_log=list(room.chat_log),
            whiteboard=room.whiteboard.model_copy(deep=True),
            presence=[p.model_copy() for p in presence or []],
        )

    def provision(self, room_id: str) -> RoomState:
        self._provisioned.add(room_id)
        return self.get_or_create(room_id)

    def is_provisioned(self, room_id: str) -> bool:
        return room_id in self._provisioned

    def room_ids(self) -> List[str]:
        return list(self._rooms.keys())

    def evict(self, room_id: str) -> bool:
        """Drop a room from memory. The durable history store is untouched."""
        room = self._rooms.pop(room_id, None)
        if room is not None:
            logger.info("🧹 Room %s evicted from memory", room_id)
        return room is not None

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {
            room_id: {
                "chatMessages": len(room.chat_log),
                "whiteboardElements": len(room.whiteboard.elements),
                "codeLength": len(room.code.text),
                "createdAt": room.created_at.isoformat(),
                "lastActivity": room.last_activity.isoformat(),
            }
            for room_id, room in self._rooms.items()
        }
