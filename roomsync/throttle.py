"""Trailing-edge debounce for high-frequency event kinds.

The first event for a (room, connection) key opens a window. Events arriving
inside the window only replace the pending payload. When the window elapses the
latest payload is flushed, so the final state of a burst is never dropped, and
each key flushes at most once per window.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

ThrottleKey = Tuple[str, str]  # (room_id, connection_id)
FlushCallback = Callable[[Any], None]


class ThrottleGate:
    def __init__(self, window: float = 0.1):
        if window <= 0:
            raise ValueError("throttle window must be positive")
        self.window = window
        self._pending: Dict[ThrottleKey, Any] = {}
        self._callbacks: Dict[ThrottleKey, FlushCallback] = {}
        self._timers: Dict[ThrottleKey, asyncio.TimerHandle] = {}
        self.submitted = 0
        self.flushed = 0

    def submit(self, key: ThrottleKey, payload: Any, on_flush: FlushCallback):
        self.submitted += 1
        self._pending[key] = payload
        self._callbacks[key] = on_flush
        if key not in self._timers:
            loop = asyncio.get_running_loop()
            self._timers[key] = loop.call_later(self.window, self._window_elapsed, key)

    def pending(self, key: ThrottleKey) -> Optional[Any]:
        return self._pending.get(key)

    def _window_elapsed(self, key: ThrottleKey):
        self._timers.pop(key, None)
        self._fire(key)

    def _fire(self, key: ThrottleKey) -> bool:
        if key not in self._pending:
            return False
        payload = self._pending.pop(key)
        callback = self._callbacks.pop(key)
        self.flushed += 1
        callback(payload)
        return True

    def flush(self, key: ThrottleKey) -> bool:
        """Deliver the pending payload for ``key`` right away"""
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        return self._fire(key)

    def _keys_for(self, connection_id: str) -> List[ThrottleKey]:
        keys = set(self._pending) | set(self._timers)
        return [key for key in keys if key[1] == connection_id]

    def flush_connection(self, connection_id: str, room_id: Optional[str] = None) -> int:
        flushed = 0
        for key in self._keys_for(connection_id):
            if room_id is None or key[0] == room_id:
                flushed += int(self.flush(key))
        return flushed

    def discard_connection(self, connection_id: str) -> int:
        dropped = 0
        for key in self._keys_for(connection_id):
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            self._callbacks.pop(key, None)
            if self._pending.pop(key, None) is not None:
                dropped += 1
        if dropped:
            logger.debug("Dropped %d pending updates of %s", dropped, connection_id)
        return dropped

    def close(self):
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._pending.clear()
        self._callbacks.clear()
