from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Judge0 id for Python 3, the editor's default language
DEFAULT_LANGUAGE_ID = 71


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Snake_case in Python, camelCase on the wire"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# Room state

class CodeState(WireModel):
    text: str = ""
    language_id: int = DEFAULT_LANGUAGE_ID
    stdin: str = ""


class CodePatch(WireModel):
    text: Optional[str] = None
    language_id: Optional[int] = None
    stdin: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ChatMessage(WireModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    author_identity: str
    author_display_name: str = ""
    text: str
    sent_at: datetime = Field(default_factory=utcnow)


class WhiteboardState(WireModel):
    elements: List[Any] = Field(default_factory=list)
    app_state: Dict[str, Any] = Field(default_factory=dict)


class Participant(WireModel):
    identity: str
    display_name: str = ""
    connection_id: str
    is_typing: bool = False


class RoomSnapshot(WireModel):
    room_id: str
    code: CodeState
    chat_log: List[ChatMessage]
    whiteboard: WhiteboardState
    presence: List[Participant] = Field(default_factory=list)
    taken_at: datetime = Field(default_factory=utcnow)


# Wire envelope

class WebSocketMessage(BaseModel):
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None


# Client -> server payloads

class RoomEvent(WireModel):
    room_id: str = Field(min_length=1)


class CodeChangePayload(RoomEvent):
    text: Optional[str] = None
    language_id: Optional[int] = None
    stdin: Optional[str] = None

    def to_patch(self) -> CodePatch:
        return CodePatch(text=self.text, language_id=self.language_id, stdin=self.stdin)


class StdinChangePayload(RoomEvent):
    stdin: str

    def to_patch(self) -> CodePatch:
        return CodePatch(stdin=self.stdin)


class LanguageChangePayload(RoomEvent):
    language_id: int

    def to_patch(self) -> CodePatch:
        return CodePatch(language_id=self.language_id)


class ChatSendPayload(RoomEvent):
    text: str

    @field_validator("text")
    @classmethod
    def strip_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("chat message is empty")
        return value


class TypingPayload(RoomEvent):
    is_typing: bool = False


class WhiteboardChangePayload(RoomEvent):
    elements: List[Any] = Field(default_factory=list)
    app_state: Dict[str, Any] = Field(default_factory=dict)


class ExecuteCodePayload(RoomEvent):
    source_code: Optional[str] = None
    language_id: Optional[int] = None
    stdin: Optional[str] = None


# WebRTC signaling, relayed untouched. No target means the rest of the room.

class SignalPayload(RoomEvent):
    target_connection_id: Optional[str] = Field(default=None, min_length=1)


class OfferPayload(SignalPayload):
    offer: Dict[str, Any]


class AnswerPayload(SignalPayload):
    answer: Dict[str, Any]


class IceCandidatePayload(SignalPayload):
    # null marks the end of candidates
    candidate: Optional[Dict[str, Any]] = None


class ConnectionStatePayload(SignalPayload):
    target_connection_id: str = Field(min_length=1)
    state: str


class VideoTogglePayload(RoomEvent):
    is_video_on: bool


class AudioTogglePayload(RoomEvent):
    is_audio_on: bool


# Collaborator results

class VerifiedIdentity(BaseModel):
    identity: str
    display_name: str


class ExecutionResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
