import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from transport import Group, Transport


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class DecryptionAttempt:
    count: int = 0
    last_at: float = 0.0


@dataclass
class Session:
    session_id: str
    status: SessionStatus = SessionStatus.DISCONNECTED
    session_name: Optional[str] = None
    phone_number: Optional[str] = None
    qr_payload: Optional[str] = None
    reconnect_attempts: int = 0
    heartbeat_failures: int = 0
    last_heartbeat_at: Optional[float] = None
    current_menu_id: Optional[Any] = None
    decryption_attempts: Dict[str, DecryptionAttempt] = field(default_factory=dict)
    groups: List[Group] = field(default_factory=list)
    deleted: bool = False
    reconnecting: bool = False
    logged_out: bool = False
    last_reply_at: float = 0.0
    # Bumped on every connect; events carrying an older generation are dropped.
    generation: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    transport: Optional[Transport] = field(default=None, repr=False)
    qr_timer: Any = field(default=None, repr=False)
    reconnect_timer: Any = field(default=None, repr=False)
    heartbeat_task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)
    contact_locks: Dict[str, asyncio.Lock] = field(default_factory=dict, repr=False)

    def contact_lock(self, contact_id: str) -> asyncio.Lock:
        lock = self.contact_locks.get(contact_id)
        if lock is None:
            lock = asyncio.Lock()
            self.contact_locks[contact_id] = lock
        return lock

    def to_status(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "session_name": self.session_name or f"Session {self.session_id}",
            "phone_number": self.phone_number,
            "has_qr": bool(self.qr_payload),
            "reconnect_attempts": self.reconnect_attempts,
            "heartbeat_failures": self.heartbeat_failures,
            "last_heartbeat_at": self.last_heartbeat_at,
            "current_menu_id": self.current_menu_id,
            "groups": len(self.groups),
            "logged_out": self.logged_out,
            "updated_at": self.updated_at,
        }


class SessionRegistry:
    """
    In-memory ``session_id -> Session``. The source of truth for whether a
    session is usable; the JSON mirror in state.py only follows it.
    """

    def __init__(self) -> None:
        self.sessions: Dict[str, Session] = {}
        # Invoked with the session after every status change.
        self.on_change: Optional[Callable[[Session], None]] = None

    def create(self, session_id: str, session_name: Optional[str] = None) -> Session:
        existing = self.sessions.get(session_id)
        if existing is not None and not existing.deleted:
            return existing
        session = Session(session_id=session_id, session_name=session_name)
        self.sessions[session_id] = session
        self._fire_change(session)
        return session

    def get(self, session_id: str, include_deleted: bool = False) -> Optional[Session]:
        session = self.sessions.get(session_id)
        if session is None:
            return None
        if session.deleted and not include_deleted:
            return None
        return session

    def set_status(self, session_id: str, status: SessionStatus) -> Optional[Session]:
        session = self.get(session_id)
        if session is None:
            return None
        if session.status != status:
            logging.getLogger("supervisor.registry").info(
                "Session %s: %s -> %s", session_id, session.status.value, status.value
            )
        session.status = status
        session.updated_at = time.time()
        self._fire_change(session)
        return session

    def mark_deleted(self, session_id: str) -> Optional[Session]:
        session = self.sessions.get(session_id)
        if session is None:
            return None
        session.deleted = True
        session.reconnecting = False
        session.updated_at = time.time()
        return session

    def delete(self, session_id: str) -> Optional[Session]:
        return self.sessions.pop(session_id, None)

    def all(self) -> List[Session]:
        return [s for s in self.sessions.values() if not s.deleted]

    def ids(self) -> List[str]:
        return [s.session_id for s in self.all()]

    def __contains__(self, session_id: object) -> bool:
        return isinstance(session_id, str) and self.get(session_id) is not None

    def __len__(self) -> int:
        return len(self.all())

    def _fire_change(self, session: Session) -> None:
        cb = self.on_change
        if cb:
            try:
                cb(session)
            except Exception:
                logging.exception("on_change callback failed")
