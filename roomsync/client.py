"""Client-side replica of a room.

Every update applied to the local view carries a provenance tag. Only
``LOCAL`` updates turn into outbound frames, so state received from the server
is never sent back as if it were a new edit.
"""
import enum
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .models import ChatMessage, CodePatch, CodeState, ExecutionResult, Participant, WhiteboardState

Frame = Dict[str, Any]


class Provenance(str, enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class TaggedUpdate:
    kind: str  # "code" or "whiteboard"
    changes: Dict[str, Any]
    provenance: Provenance


CODE_EVENTS = ("code_change", "stdin_change", "language_change")


class ClientReplica:
    def __init__(self, room_id: str):
        self.room_id = room_id
        self.code = CodeState()
        self.whiteboard = WhiteboardState()
        self.chat_log: List[ChatMessage] = []
        self.presence: List[Participant] = []
        self.typing: Dict[str, bool] = {}
        self.last_execution: Optional[ExecutionResult] = None
        self.joined = False
        self.errors: List[Dict[str, Any]] = []
        self.outbox: List[Frame] = []

    def apply(self, update: TaggedUpdate) -> List[Frame]:
        if update.kind == "code":
            patch = CodePatch.model_validate(update.changes)
            self.code = self.code.model_copy(update=patch.changes())
        elif update.kind == "whiteboard":
            self.whiteboard = WhiteboardState.model_validate(update.changes)
        else:
            raise ValueError(f"unknown update kind {update.kind!r}")

        if update.provenance is Provenance.REMOTE:
            return []
        frames = [self._outbound(update)]
        self.outbox.extend(frames)
        return frames

    def _outbound(self, update: TaggedUpdate) -> Frame:
        if update.kind == "whiteboard":
            return self._frame("whiteboard_change", self.whiteboard.to_wire())
        patch = CodePatch.model_validate(update.changes).model_dump(by_alias=True, exclude_none=True)
        if set(patch) == {"languageId"}:
            return self._frame("language_change", patch)
        if set(patch) == {"stdin"}:
            return self._frame("stdin_change", patch)
        return self._frame("code_change", patch)

    def _frame(self, event_type: str, data: Dict[str, Any]) -> Frame:
        return {"type": event_type, "data": {"roomId": self.room_id, **data}}

    # Local intents

    def join(self) -> Frame:
        return self._queue(self._frame("join_room", {}))

    def edit_code(self, **changes: Any) -> List[Frame]:
        return self.apply(TaggedUpdate("code", changes, Provenance.LOCAL))

    def draw(self, elements: List[Any], app_state: Optional[Dict[str, Any]] = None) -> List[Frame]:
        changes = {"elements": elements, "app_state": app_state or {}}
        return self.apply(TaggedUpdate("whiteboard", changes, Provenance.LOCAL))

    def say(self, text: str) -> Frame:
        return self._queue(self._frame("chat_send", {"text": text}))

    def set_typing(self, is_typing: bool) -> Frame:
        return self._queue(self._frame("typing", {"isTyping": is_typing}))

    def _queue(self, frame: Frame) -> Frame:
        self.outbox.append(frame)
        return frame

    def take_outbox(self) -> List[Frame]:
        frames, self.outbox = self.outbox, []
        return frames

    # Server frames

    def receive(self, frame: Frame):
        event_type, data = frame["type"], frame.get("data", {})
        if data.get("roomId") not in (None, self.room_id):
            return
        if event_type == "room_joined":
            self.joined = True
            self.code = CodeState.model_validate(data["code"])
            self.whiteboard = WhiteboardState.model_validate(data["whiteboard"])
            self.chat_log = [ChatMessage.model_validate(m) for m in data["chatLog"]]
            self.presence = [Participant.model_validate(p) for p in data["presence"]]
        elif event_type == "room_left":
            self.joined = False
        elif event_type in CODE_EVENTS:
            changes = {k: v for k, v in data.items() if k in ("text", "languageId", "stdin")}
            self.apply(TaggedUpdate("code", changes, Provenance.REMOTE))
        elif event_type in ("whiteboard_update", "whiteboard_history"):
            changes = {"elements": data.get("elements", []), "app_state": data.get("appState", {})}
            self.apply(TaggedUpdate("whiteboard", changes, Provenance.REMOTE))
        elif event_type == "chat_message":
            self.chat_log.append(ChatMessage.model_validate(data))
        elif event_type == "chat_history":
            self.chat_log = [ChatMessage.model_validate(m) for m in data.get("messages", [])]
        elif event_type == "presence_update":
            self.presence = [Participant.model_validate(p) for p in data.get("participants", [])]
        elif event_type == "typing":
            self.typing[data["connectionId"]] = data["isTyping"]
        elif event_type == "executionResult":
            self.last_execution = ExecutionResult(stdout=data.get("stdout", ""), stderr=data.get("stderr", ""))
        elif event_type == "error":
            self.errors.append(data)

    def receive_all(self, frames: List[Frame]):
        for frame in frames:
            self.receive(frame)
