from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for errors reported back to the originating connection"""

    code = "sync_error"
    close_code: Optional[int] = None

    def __init__(self, message: str = "", event: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.event = event

    def to_frame_data(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "event": self.event}


class PermissionDenied(SyncError):
    code = "permission_denied"
    close_code = 4003


class NotInRoom(SyncError):
    code = "not_in_room"


class RoomNotFound(SyncError):
    code = "room_not_found"
    close_code = 4004


class InvalidEvent(SyncError):
    code = "invalid_event"


class TransportDisconnect(Exception):
    """The peer is gone. Triggers cleanup, never shown to users."""

    def __init__(self, connection_id: str):
        super().__init__(f"connection {connection_id} is closed")
        self.connection_id = connection_id
