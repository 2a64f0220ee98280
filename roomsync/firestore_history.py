import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

from google.cloud import firestore

from .models import ChatMessage, utcnow

logger = logging.getLogger(__name__)


class FirestoreChatHistory:
    """Durable chat backlog in ``rooms/{room_id}/messages``.

    The google client is blocking, so the async contract runs it in a worker
    thread to keep the event loop free for fan-out.
    """

    def __init__(self, credentials_file: str = "", limit: int = 100, client: Optional[Any] = None):
        self.limit = limit
        if client is not None:
            self.db = client
            return
        try:
            if credentials_file and os.path.exists(credentials_file):
                self.db = firestore.Client.from_service_account_json(credentials_file)
                logger.info("✅ Firestore client initialized with service account: %s", credentials_file)
            else:
                self.db = firestore.Client()
                logger.info("✅ Firestore client initialized with default credentials")
        except Exception as e:
            logger.error("❌ Failed to initialize Firestore client: %s", e)
            self.db = None

    def _messages(self, room_id: str):
        return self.db.collection('rooms').document(room_id).collection('messages')

    def save_chat_message(self, room_id: str, message: ChatMessage) -> bool:
        """Save chat message to Firestore"""
        if not self.db:
            return False

        try:
            message_ref = self._messages(room_id).document()
            message_ref.set({
                'message_id': message.id,
                'author_identity': message.author_identity,
                'author_display_name': message.author_display_name,
                'text': message.text,
                'sent_at': message.sent_at,
                'stored_at': utcnow(),
            })
            return True
        except Exception as e:
            logger.error("Error saving chat message for room %s: %s", room_id, e)
            return False

    def get_room_messages(self, room_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        """Get recent messages for a room, oldest first"""
        if not self.db:
            return []

        try:
            query = self._messages(room_id).order_by(
                'sent_at', direction=firestore.Query.DESCENDING
            ).limit(limit or self.limit)
            messages = [self._to_message(doc.id, doc.to_dict()) for doc in query.stream()]
            return list(reversed(messages))
        except Exception as e:
            logger.error("Error getting messages for room %s: %s", room_id, e)
            return []

    @staticmethod
    def _to_message(doc_id: str, data: Dict[str, Any]) -> ChatMessage:
        return ChatMessage(
            id=data.get('message_id') or doc_id,
            author_identity=data.get('author_identity', 'unknown'),
            author_display_name=data.get('author_display_name', ''),
            text=data.get('text', ''),
            sent_at=data.get('sent_at') or utcnow(),
        )

    async def load_history(self, room_id: str) -> List[ChatMessage]:
        return await asyncio.to_thread(self.get_room_messages, room_id)

    async def append_durable(self, room_id: str, message: ChatMessage) -> None:
        await asyncio.to_thread(self.save_chat_message, room_id, message)
