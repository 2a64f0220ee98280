import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> List[str]:
    value = os.getenv(name, default)
    if value == "*":
        return ["*"]
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 8000
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    chat_log_limit: int = 200
    whiteboard_throttle_ms: int = 100
    outbox_max_size: int = 1000

    heartbeat_timeout: float = 60.0
    cleanup_interval: float = 60.0
    room_cleanup_delay: float = 300.0
    require_provisioned_rooms: bool = False

    chat_history_backend: str = "memory"
    credentials_file: str = ""
    judge0_url: str = ""
    judge0_key: str = ""
    sandbox_timeout: float = 15.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (and .env, if present)"""
        load_dotenv()
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            allowed_origins=_env_list("ALLOWED_ORIGINS", "*"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            chat_log_limit=int(os.getenv("CHAT_LOG_LIMIT", "200")),
            whiteboard_throttle_ms=int(os.getenv("WHITEBOARD_THROTTLE_MS", "100")),
            outbox_max_size=int(os.getenv("OUTBOX_MAX_SIZE", "1000")),
            heartbeat_timeout=float(os.getenv("HEARTBEAT_TIMEOUT", "60")),
            cleanup_interval=float(os.getenv("CLEANUP_SCHEDULER_INTERVAL", "60")),
            room_cleanup_delay=float(os.getenv("ROOM_CLEANUP_DELAY", "300")),
            require_provisioned_rooms=_env_bool("REQUIRE_PROVISIONED_ROOMS"),
            chat_history_backend=os.getenv("CHAT_HISTORY_BACKEND", "memory").lower(),
            credentials_file=os.getenv("GOOGLE_APPLICATION_CREDENTIALS", ""),
            judge0_url=os.getenv("JUDGE0_URL", ""),
            judge0_key=os.getenv("JUDGE0_KEY", ""),
            sandbox_timeout=float(os.getenv("SANDBOX_TIMEOUT", "15")),
        )

    @property
    def whiteboard_window(self) -> float:
        return self.whiteboard_throttle_ms / 1000.0
