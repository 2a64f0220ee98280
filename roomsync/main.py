import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .collaborators import ChatHistoryStore, InMemoryChatHistory, NullChatHistory
from .config import Settings
from .errors import PermissionDenied
from .sandbox import CodeSandbox, Judge0Sandbox, StubSandbox
from .websocket import ConnectionManager

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateRoomRequest(BaseModel):
    name: str
    created_by: str = "unknown"


def build_history(settings: Settings) -> ChatHistoryStore:
    if settings.chat_history_backend == "firestore":
        from .firestore_history import FirestoreChatHistory
        return FirestoreChatHistory(settings.credentials_file, limit=settings.chat_log_limit)
    if settings.chat_history_backend == "none":
        return NullChatHistory()
    return InMemoryChatHistory(limit=settings.chat_log_limit)


def build_sandbox(settings: Settings) -> CodeSandbox:
    if settings.judge0_url:
        return Judge0Sandbox(settings.judge0_url, settings.judge0_key, timeout=settings.sandbox_timeout)
    return StubSandbox()


def create_app(settings: Optional[Settings] = None, manager: Optional[ConnectionManager] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if manager is None:
        manager = ConnectionManager(
            settings,
            history=build_history(settings),
            sandbox=build_sandbox(settings),
        )

    app = FastAPI(title="Room Sync API", version="1.0.0")
    app.state.manager = manager
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        max_age=86400,
    )
    app.include_router(router)

    @app.on_event("startup")
    async def startup_event():
        """Start the heartbeat reaper and idle room eviction"""
        manager.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await manager.stop()

    return app


def get_manager(request: Request) -> ConnectionManager:
    return request.app.state.manager


@router.get("/")
async def root():
    return {"message": "Room Sync API is running!"}


@router.get("/health")
async def health_check(request: Request):
    manager = get_manager(request)
    rooms = manager.store.room_ids()
    return {
        "status": "healthy",
        "connections": manager.get_connection_count(),
        "activeRooms": len(rooms),
        "rooms": rooms,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/rooms")
async def get_all_rooms(request: Request):
    return {"rooms": get_manager(request).get_all_rooms()}


@router.post("/rooms")
async def create_room(request: Request, body: CreateRoomRequest):
    """Provision a room so it can be joined when provisioning is required"""
    manager = get_manager(request)
    manager.store.provision(body.name)
    logger.info("📁 Room %s provisioned by %s", body.name, body.created_by)
    return {"room_id": body.name, "name": body.name, "created_by": body.created_by}


@router.get("/rooms/{room_id}/snapshot")
async def get_room_snapshot(request: Request, room_id: str):
    manager = get_manager(request)
    if not manager.store.exists(room_id):
        raise HTTPException(status_code=404, detail="Room not found")
    return manager.store.snapshot(room_id, manager.presence.members(room_id)).to_wire()


@router.get("/debug/rooms")
async def debug_rooms(request: Request):
    manager = get_manager(request)
    stats = manager.store.stats()
    rooms = {
        room_id: {
            "participants": manager.presence.connection_ids(room_id),
            "participantCount": manager.presence.count(room_id),
            "chatHistory": room_stats["chatMessages"],
            "whiteboardElements": room_stats["whiteboardElements"],
        }
        for room_id, room_stats in stats.items()
    }
    return {
        "totalRooms": len(rooms),
        "rooms": rooms,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/debug/chat/{room_id}")
async def debug_chat(request: Request, room_id: str):
    manager = get_manager(request)
    if not manager.store.exists(room_id):
        raise HTTPException(status_code=404, detail="Room not found")
    chat_log = manager.store.snapshot(room_id).chat_log
    return {
        "roomId": room_id,
        "messageCount": len(chat_log),
        "messages": [message.to_wire() for message in chat_log[-10:]],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/cleanup/trigger")
async def trigger_cleanup(request: Request):
    """Manually trigger stale connection and idle room cleanup"""
    manager = get_manager(request)
    result = await manager.trigger_cleanup()
    return {
        "success": True,
        "message": "Cleanup check triggered",
        **result,
        "scheduled_rooms": list(manager.empty_rooms_scheduled.keys()),
    }


@router.get("/cleanup/status")
async def get_cleanup_status(request: Request):
    return get_manager(request).cleanup_status()


@router.websocket("/ws")
@router.websocket("/ws/{room_id}")
async def websocket_endpoint(websocket: WebSocket, room_id: Optional[str] = None):
    manager: ConnectionManager = websocket.app.state.manager
    await websocket.accept()

    try:
        connection = await manager.connect(websocket, websocket.query_params.get("token"))
    except PermissionDenied as e:
        # Connection was rejected by the identity collaborator
        logger.info("❌ Connection rejected: %s", e.message)
        await websocket.close(code=e.close_code, reason=e.message)
        return

    try:
        if room_id:
            await manager.join(connection, room_id)
        while True:
            data = await websocket.receive_text()
            await manager.dispatch(connection, data)
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(connection)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = Settings.from_env()
    uvicorn.run("roomsync.main:app", host=settings.host, port=settings.port)
