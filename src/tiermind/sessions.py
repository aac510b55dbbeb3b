"""Per-device session context. A confident resolution locks the session."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)

LOCK_CONFIDENCE = 0.8


@dataclass
class SessionContext:
    identity: str | None = None
    locked: bool = False
    confidence: float = 0.0
    last_activity: float = field(default_factory=time.time)
    created_at: float = field(default_factory=time.time)

    @classmethod
    def coerce(cls, value: SessionContext | dict | None) -> SessionContext | None:
        if value is None or isinstance(value, SessionContext):
            return value
        return cls(
            identity=value.get("identity"),
            locked=bool(value.get("locked", False)),
            confidence=float(value.get("confidence", 0.0)),
        )


class SessionTracker:
    def __init__(self, timeout: float = 60 * 60,
                 clock: Callable[[], float] = time.time) -> None:
        self.timeout = timeout
        self._clock = clock
        self._sessions: dict[str, SessionContext] = {}
        self._lock = threading.Lock()

    def context(self, device_id: str) -> SessionContext:
        with self._lock:
            now = self._clock()
            session = self._sessions.get(device_id)
            if session is None:
                session = SessionContext(last_activity=now, created_at=now)
                self._sessions[device_id] = session
            session.last_activity = now
            return session

    def commit(self, device_id: str, identity: str, confidence: float,
               reason: str = "") -> SessionContext:
        session = self.context(device_id)
        with self._lock:
            session.identity = identity
            session.confidence = confidence
            session.locked = confidence >= LOCK_CONFIDENCE
        logger.debug("session %s -> %s (confidence %.2f, %s)",
                     device_id, identity, confidence, reason or "no reason")
        return session

    def unlock(self, device_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(device_id)
            if session is None:
                return False
            session.locked = False
            return True

    def reset(self, device_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(device_id, None) is not None

    def active(self) -> dict[str, SessionContext]:
        with self._lock:
            now = self._clock()
            return {
                device: s for device, s in self._sessions.items()
                if now - s.last_activity < self.timeout
            }

    def cleanup(self, now: float | None = None) -> int:
        with self._lock:
            now = self._clock() if now is None else now
            stale = [
                device for device, s in self._sessions.items()
                if now - s.last_activity > self.timeout
            ]
            for device in stale:
                del self._sessions[device]
        if stale:
            logger.info("dropped %d inactive sessions", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
