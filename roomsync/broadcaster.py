"""Single funnel for client-originated room mutations.

Every inbound event goes through ``ChangeBroadcaster.handle``: the payload is
validated, the sender's membership is checked, a handler from the dispatch
table applies the change and returns a ``Delta``, and the delta is fanned out
to every other joined member. WebRTC signals may instead name one joined peer
of the same room as their only recipient.

Applying a change and enqueueing its fan-out happen without yielding to the
event loop, so all members observe a room's changes in server arrival order.
Durable writes and code execution run as background tasks and never hold up
fan-out.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Type

from pydantic import ValidationError

from .collaborators import ChatHistoryStore, NullChatHistory
from .errors import InvalidEvent, NotInRoom, TransportDisconnect
from .join import JoinCoordinator
from .models import (
    AnswerPayload,
    AudioTogglePayload,
    ChatMessage,
    ChatSendPayload,
    CodeChangePayload,
    ConnectionStatePayload,
    ExecuteCodePayload,
    ExecutionResult,
    IceCandidatePayload,
    LanguageChangePayload,
    OfferPayload,
    RoomEvent,
    SignalPayload,
    StdinChangePayload,
    TypingPayload,
    VideoTogglePayload,
    WhiteboardChangePayload,
)
from .presence import PresenceTracker
from .sandbox import CodeSandbox, StubSandbox
from .state import RoomStateStore
from .throttle import ThrottleGate
from .transport import Connection

logger = logging.getLogger(__name__)

OTHERS = "others"
ORIGIN = "origin"
DIRECT = "direct"


@dataclass
class Delta:
    event: str
    data: Dict[str, Any]
    target: str = OTHERS
    recipient: Optional[str] = None
    followup: Optional[Callable[[], Awaitable[None]]] = None


@dataclass
class SyncContext:
    store: RoomStateStore
    presence: PresenceTracker
    history: ChatHistoryStore = field(default_factory=NullChatHistory)


def origin_of(connection: Connection) -> Dict[str, str]:
    return {"identity": connection.identity, "connectionId": connection.connection_id}


# Handlers: (context, connection, payload) -> Delta

def handle_code_change(ctx: SyncContext, connection: Connection, payload: RoomEvent, event: str) -> Delta:
    patch = payload.to_patch()
    ctx.store.apply_code_change(payload.room_id, patch)
    data = {"roomId": payload.room_id, **patch.model_dump(by_alias=True, exclude_none=True)}
    data["from"] = origin_of(connection)
    return Delta(event, data)


def handle_chat_send(ctx: SyncContext, connection: Connection, payload: ChatSendPayload) -> Delta:
    message = ChatMessage(
        author_identity=connection.identity,
        author_display_name=connection.display_name,
        text=payload.text,
    )
    stored = ctx.store.append_chat_message(payload.room_id, message)
    return Delta(
        "chat_message",
        {"roomId": payload.room_id, **stored.to_wire()},
        followup=partial(ctx.history.append_durable, payload.room_id, stored),
    )


def handle_typing(ctx: SyncContext, connection: Connection, payload: TypingPayload) -> Optional[Delta]:
    participant = ctx.presence.set_typing(payload.room_id, connection.connection_id, payload.is_typing)
    if participant is None:
        return None
    return Delta("typing", {"roomId": payload.room_id, **participant.to_wire()})


def handle_whiteboard_change(ctx: SyncContext, connection: Connection, payload: WhiteboardChangePayload) -> Delta:
    board = ctx.store.replace_whiteboard(payload.room_id, payload.elements, payload.app_state)
    data = {"roomId": payload.room_id, **board.to_wire(), "from": origin_of(connection)}
    return Delta("whiteboard_update", data)


def handle_whiteboard_join(ctx: SyncContext, connection: Connection, payload: RoomEvent) -> Delta:
    board = ctx.store.whiteboard(payload.room_id)
    return Delta("whiteboard_history", {"roomId": payload.room_id, **board.to_wire()}, target=ORIGIN)


# WebRTC signaling and media state: relayed as-is, nothing is stored

def _to_target_or_room(ctx: SyncContext, payload: SignalPayload, event: str, reply: str, data: Dict[str, Any]) -> Delta:
    target = payload.target_connection_id
    if target is None:
        return Delta(reply, data)
    if ctx.presence.get(payload.room_id, target) is None:
        raise NotInRoom(f"connection {target} is not in room {payload.room_id}", event=event)
    return Delta(reply, data, target=DIRECT, recipient=target)


def handle_signal(ctx: SyncContext, connection: Connection, payload: SignalPayload,
                  event: str, reply: str, key: str) -> Delta:
    data = {
        "roomId": payload.room_id,
        key: getattr(payload, key),
        "fromConnectionId": connection.connection_id,
    }
    return _to_target_or_room(ctx, payload, event, reply, data)


def handle_connection_state(ctx: SyncContext, connection: Connection, payload: ConnectionStatePayload) -> Delta:
    data = {"roomId": payload.room_id, "fromConnectionId": connection.connection_id, "state": payload.state}
    return _to_target_or_room(ctx, payload, "webrtc_connection_state", "peer_connection_state", data)


def handle_video_toggle(ctx: SyncContext, connection: Connection, payload: VideoTogglePayload) -> Delta:
    return Delta("user_video_toggle", {
        "roomId": payload.room_id,
        "connectionId": connection.connection_id,
        "isVideoOn": payload.is_video_on,
    })


def handle_audio_toggle(ctx: SyncContext, connection: Connection, payload: AudioTogglePayload) -> Delta:
    return Delta("user_audio_toggle", {
        "roomId": payload.room_id,
        "connectionId": connection.connection_id,
        "isAudioOn": payload.is_audio_on,
    })


def handle_media_ready(ctx: SyncContext, connection: Connection, payload: RoomEvent) -> Delta:
    return Delta("user_media_ready", {"roomId": payload.room_id, "connectionId": connection.connection_id})


def handle_media_status_request(ctx: SyncContext, connection: Connection, payload: RoomEvent) -> Delta:
    return Delta("media_status_request", {"roomId": payload.room_id, "fromConnectionId": connection.connection_id})


Handler = Callable[..., Optional[Delta]]


def _signal(event: str, reply: str, key: str) -> Handler:
    return partial(handle_signal, event=event, reply=reply, key=key)


EVENT_HANDLERS: Dict[str, Tuple[Type[RoomEvent], Handler]] = {
    "code_change": (CodeChangePayload, partial(handle_code_change, event="code_change")),
    "stdin_change": (StdinChangePayload, partial(handle_code_change, event="stdin_change")),
    "language_change": (LanguageChangePayload, partial(handle_code_change, event="language_change")),
    "chat_send": (ChatSendPayload, handle_chat_send),
    "typing": (TypingPayload, handle_typing),
    "whiteboard_change": (WhiteboardChangePayload, handle_whiteboard_change),
    "whiteboard_join": (RoomEvent, handle_whiteboard_join),
    "offer": (OfferPayload, _signal("offer", "receive_offer", "offer")),
    "answer": (AnswerPayload, _signal("answer", "receive_answer", "answer")),
    "ice_candidate": (IceCandidatePayload, _signal("ice_candidate", "receive_candidate", "candidate")),
    "ice-candidate": (IceCandidatePayload, _signal("ice-candidate", "receive_candidate", "candidate")),
    "webrtc_connection_state": (ConnectionStatePayload, handle_connection_state),
    "toggle_video": (VideoTogglePayload, handle_video_toggle),
    "toggle_audio": (AudioTogglePayload, handle_audio_toggle),
    "media_stream_ready": (RoomEvent, handle_media_ready),
    "request_media_status": (RoomEvent, handle_media_status_request),
}

THROTTLED_EVENTS = frozenset({"whiteboard_change"})


class ChangeBroadcaster:
    def __init__(
        self,
        store: RoomStateStore,
        presence: PresenceTracker,
        coordinator: JoinCoordinator,
        gate: Optional[ThrottleGate] = None,
        history: Optional[ChatHistoryStore] = None,
        sandbox: Optional[CodeSandbox] = None,
    ):
        self.coordinator = coordinator
        self.gate = gate or ThrottleGate()
        self.sandbox = sandbox or StubSandbox()
        self.context = SyncContext(store=store, presence=presence, history=history or NullChatHistory())
        self.handlers = dict(EVENT_HANDLERS)
        self._tasks: Set[asyncio.Task] = set()
        coordinator.bind(self)

    def handle(self, connection: Connection, event_type: str, data: Dict[str, Any]):
        """Validate and apply one client event. Raises SyncError subclasses."""
        if event_type == "execute_code":
            payload = self._parse(ExecuteCodePayload, event_type, data)
            self._require_joined(connection, payload.room_id, event_type)
            self._spawn(self._execute(connection, payload))
            return

        entry = self.handlers.get(event_type)
        if entry is None:
            raise InvalidEvent(f"unknown event type {event_type!r}", event=event_type)
        model, handler = entry
        payload = self._parse(model, event_type, data)
        self._require_joined(connection, payload.room_id, event_type)

        if event_type in THROTTLED_EVENTS:
            key = (payload.room_id, connection.connection_id)
            self.gate.submit(key, payload, partial(self._flush_throttled, connection, event_type, handler))
            return
        self._apply(connection, handler, payload)

    def _parse(self, model: Type[RoomEvent], event_type: str, data: Dict[str, Any]) -> Any:
        try:
            return model.model_validate(data or {})
        except ValidationError as e:
            error = e.errors()[0]
            where = ".".join(str(part) for part in error.get("loc", ())) or "payload"
            raise InvalidEvent(f"{where}: {error.get('msg')}", event=event_type) from e

    def _require_joined(self, connection: Connection, room_id: str, event_type: str):
        if not self.coordinator.is_joined(connection.connection_id, room_id):
            raise NotInRoom(f"not joined to room {room_id}", event=event_type)

    def _apply(self, connection: Connection, handler: Handler, payload: RoomEvent):
        delta = handler(self.context, connection, payload)
        if delta is None:
            return
        if delta.target == ORIGIN:
            self._send(connection, delta)
        elif delta.target == DIRECT:
            recipient = self.coordinator.connection(delta.recipient)
            if recipient is not None and self.coordinator.is_joined(delta.recipient, payload.room_id):
                self._send(recipient, delta)
        else:
            self.fan_out(payload.room_id, delta.event, delta.data, exclude=connection.connection_id)
        if delta.followup is not None:
            self._spawn(delta.followup())

    def _send(self, connection: Connection, delta: Delta):
        try:
            connection.send(delta.event, delta.data)
        except TransportDisconnect:
            logger.debug("Dropping %s for %s, connection closed", delta.event, connection.connection_id)

    def _flush_throttled(self, connection: Connection, event_type: str, handler: Handler, payload: RoomEvent):
        if not self.coordinator.is_joined(connection.connection_id, payload.room_id):
            logger.debug("Dropping %s from %s, no longer in room %s",
                         event_type, connection.connection_id, payload.room_id)
            return
        self._apply(connection, handler, payload)

    def fan_out(self, room_id: str, event: str, data: Dict[str, Any], exclude: Optional[str] = None) -> int:
        """Enqueue one frame for every joined member of the room except ``exclude``"""
        delivered = 0
        for connection_id in self.context.presence.connection_ids(room_id):
            if connection_id == exclude or not self.coordinator.is_joined(connection_id, room_id):
                continue
            connection = self.coordinator.connection(connection_id)
            if connection is None:
                continue
            try:
                connection.send(event, data)
            except TransportDisconnect:
                continue
            delivered += 1
        logger.debug("📡 %s fanned out to %d connections in room %s", event, delivered, room_id)
        return delivered

    async def _execute(self, connection: Connection, payload: ExecuteCodePayload):
        code = self.context.store.code(payload.room_id)
        source = payload.source_code if payload.source_code is not None else code.text
        language_id = payload.language_id if payload.language_id is not None else code.language_id
        stdin = payload.stdin if payload.stdin is not None else code.stdin
        try:
            result = await self.sandbox.execute(source, language_id, stdin)
        except Exception as e:
            logger.error("❌ Sandbox failed for room %s", payload.room_id, exc_info=True)
            result = ExecutionResult(stderr=f"Execution failed: {e}")
        self.fan_out(payload.room_id, "executionResult", {
            "roomId": payload.room_id,
            "requestedBy": origin_of(connection),
            **result.model_dump(),
        })

    # Background work

    def _spawn(self, coro: Awaitable[None]):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    async def wait_idle(self):
        """Wait for outstanding durable writes and executions"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Throttle passthrough used by the coordinator

    def flush_pending(self, connection_id: str, room_id: Optional[str] = None) -> int:
        return self.gate.flush_connection(connection_id, room_id)

    def discard_pending(self, connection_id: str) -> int:
        return self.gate.discard_connection(connection_id)

    async def close(self):
        self.gate.close()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
