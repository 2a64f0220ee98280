"""Contracts for the services the sync layer consumes but does not own.

Identity verification, room authorization and durable chat history live
outside this process. The sync layer only talks to them through the small
interfaces below; the implementations here cover local development and tests.
"""
import inspect
import logging
from collections import defaultdict, deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Protocol, Union

from .errors import PermissionDenied
from .models import ChatMessage, VerifiedIdentity

logger = logging.getLogger(__name__)


class IdentityVerifier(Protocol):
    async def verify(self, token: Optional[str]) -> VerifiedIdentity:
        """Return the verified identity or raise PermissionDenied"""
        ...


class RoomAuthorizer(Protocol):
    async def authorize(self, identity: str, room_id: str) -> bool:
        ...


class ChatHistoryStore(Protocol):
    async def load_history(self, room_id: str) -> List[ChatMessage]:
        ...

    async def append_durable(self, room_id: str, message: ChatMessage) -> None:
        ...


# Identity

class DevIdentityVerifier:
    """Trusts ``identity`` or ``identity:Display Name`` tokens. Development only."""

    async def verify(self, token: Optional[str]) -> VerifiedIdentity:
        if not token or not token.strip():
            raise PermissionDenied("missing connection token")
        identity, _, display_name = token.strip().partition(":")
        if not identity:
            raise PermissionDenied("malformed connection token")
        return VerifiedIdentity(identity=identity, display_name=display_name or identity)


class TokenTableVerifier:
    def __init__(self, tokens: Dict[str, VerifiedIdentity]):
        self.tokens = dict(tokens)

    async def verify(self, token: Optional[str]) -> VerifiedIdentity:
        identity = self.tokens.get(token or "")
        if identity is None:
            raise PermissionDenied("unknown connection token")
        return identity


# Authorization

class AllowAllAuthorizer:
    async def authorize(self, identity: str, room_id: str) -> bool:
        return True


Predicate = Callable[[str, str], Union[bool, Awaitable[bool]]]


class CallableAuthorizer:
    """Adapts a plain (identity, room_id) predicate, sync or async"""

    def __init__(self, predicate: Predicate):
        self.predicate = predicate

    async def authorize(self, identity: str, room_id: str) -> bool:
        result = self.predicate(identity, room_id)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)


# Chat history

class InMemoryChatHistory:
    """Keeps the newest ``limit`` messages per room"""

    def __init__(self, limit: int = 100):
        self.limit = limit
        self._messages: Dict[str, Deque[ChatMessage]] = defaultdict(lambda: deque(maxlen=self.limit))

    async def load_history(self, room_id: str) -> List[ChatMessage]:
        return list(self._messages.get(room_id, ()))

    async def append_durable(self, room_id: str, message: ChatMessage) -> None:
        self._messages[room_id].append(message)


class NullChatHistory:
    async def load_history(self, room_id: str) -> List[ChatMessage]:
        return []

    async def append_durable(self, room_id: str, message: ChatMessage) -> None:
        return None
