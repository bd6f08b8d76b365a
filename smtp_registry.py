# smtp_registry.py
import sys
import time
import threading


class SessionRegistry:
    """Live session count and session IDs shared by all connection threads."""

    def __init__(self):
        self._lk_sessions = threading.Lock()
        self._sessions = 0
        self._lk_id = threading.Lock()
        self._last_id = 0

    @property
    def active(self):
        with self._lk_sessions:
            return self._sessions

    def add_session(self):
        with self._lk_sessions:
            self._sessions += 1
            return self._sessions

    def remove_session(self):
        with self._lk_sessions:
            self._sessions -= 1
            if self._sessions < 0:
                self._sessions = 0
            return self._sessions

    def next_session_id(self):
        with self._lk_id:
            if self._last_id == sys.maxsize:
                self._last_id = 0
            self._last_id += 1
            # 100ns ticks followed by the counter, both hex
            return f"{time.time_ns() // 100:X}{self._last_id:X}"
