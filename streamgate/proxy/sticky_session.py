"""
Sticky session identifier for the paid residential relay.

The paid API pins consecutive requests carrying the same session id to the same
exit IP. Upstreams bind tokens to the IP that fetched them, so the id is held for
a rotation window and then replaced.
"""

import logging
import secrets
import threading
import time
from typing import Callable, Optional

from ..core.config import cfg
from ..models.schemas import StickySession

logger = logging.getLogger(__name__)


class StickySessionManager:
    def __init__(self, rotation_s: Optional[float] = None, clock: Callable[[], float] = time.time):
        self.rotation_s = rotation_s if rotation_s is not None else cfg.STICKY_SESSION_ROTATION_S
        self._clock = clock
        self._lock = threading.Lock()
        self._session: Optional[StickySession] = None

    def _new_session(self) -> StickySession:
        session = StickySession(session_id=secrets.token_hex(8), created_at=self._clock())
        logger.info(f"Rotated sticky session (window {self.rotation_s}s)")
        return session

    def current_session_id(self) -> str:
        with self._lock:
            now = self._clock()
            if self._session is None or now - self._session.created_at >= self.rotation_s:
                self._session = self._new_session()
            return self._session.session_id

    def reset(self):
        """Force a new id on the next call, e.g. after the exit IP got banned."""
        with self._lock:
            self._session = None


sticky_sessions = StickySessionManager()
