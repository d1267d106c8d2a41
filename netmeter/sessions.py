"""
netmeter/sessions.py

SessionRegistry — server-side authority over live measurement sessions.

Every chunk / probe handler asks the registry whether the presented
session id is live before doing any work. The registry is the only state
mutated by concurrently running request handlers, so all access goes
through one lock, held only for the duration of the dict operation.

Sessions never expire: they are removed only by an explicit delete and
otherwise accumulate for the lifetime of the process.
"""

import threading
import time
import logging

import uuid6

from netmeter.records import Session

logger = logging.getLogger(__name__)


def new_time_ordered_id() -> str:
    """
    Return a fresh UUIDv7 string. Ids made by one process sort in creation
    order, including ids made within the same millisecond.
    """
    return str(uuid6.uuid7())


class SessionRegistry:
    """
    Thread-safe map of session id → Session.

    Usage:
        registry = SessionRegistry()
        sid = registry.create()
        registry.exists(sid)      # True
        registry.delete(sid)      # True
        registry.delete(sid)      # False
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def create(self) -> str:
        with self._lock:
            session = Session(id=new_time_ordered_id(), created_at=time.time())
            self._sessions[session.id] = session
        logger.debug("SessionRegistry: created %s", session.id)
        return session.id

    def exists(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def delete(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed is not None:
            logger.debug("SessionRegistry: deleted %s", session_id)
        return removed is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
