"""
Tracks which services have already had their schema shown in each client session.
"""

import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Set

from .constants import DEFAULT_SESSION_TTL


@dataclass
class SessionRecord:
    services_with_schema: Set[str] = field(default_factory=set)
    last_activity: float = field(default_factory=time.time)


class SessionTracker:
    """
    (session, service) -> schema already provided.

    Records are created lazily on first touch. Sessions idle for longer than
    ttl_seconds are evicted whenever any session is touched, so abandoned
    sessions do not accumulate.
    """

    def __init__(self, ttl_seconds: Optional[float] = DEFAULT_SESSION_TTL, verbose: bool = False):
        self.ttl_seconds = ttl_seconds
        self.verbose = verbose
        self._sessions: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def _log_verbose(self, message: str):
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Sessions VERBOSE] {message}", file=sys.stderr)

    def _touch(self, session_id: str) -> SessionRecord:
        # Caller holds the lock
        now = time.time()
        if self.ttl_seconds:
            self._evict_idle(now - self.ttl_seconds, keep=session_id)
        record = self._sessions.get(session_id)
        if record is None:
            record = SessionRecord(last_activity=now)
            self._sessions[session_id] = record
            self._log_verbose(f"New session tracked: {session_id}")
        record.last_activity = now
        return record

    def _evict_idle(self, cutoff: float, keep: Optional[str] = None) -> int:
        stale = [sid for sid, rec in self._sessions.items() if rec.last_activity < cutoff and sid != keep]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            self._log_verbose(f"Evicted {len(stale)} idle session(s)")
        return len(stale)

    def has_schema_been_provided(self, session_id: str, service: str) -> bool:
        with self._lock:
            return service in self._touch(session_id).services_with_schema

    def mark_schema_as_provided(self, session_id: str, service: str):
        with self._lock:
            self._touch(session_id).services_with_schema.add(service)

    def forget_session(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def sweep_idle(self, max_idle_seconds: Optional[float] = None) -> int:
        """Evict sessions idle longer than max_idle_seconds (default: the tracker's TTL)."""
        max_idle = self.ttl_seconds if max_idle_seconds is None else max_idle_seconds
        if max_idle is None:
            return 0
        with self._lock:
            return self._evict_idle(time.time() - max_idle)

    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)
